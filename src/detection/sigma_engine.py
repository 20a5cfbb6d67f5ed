from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from detection.field_matcher import get_nested_value
from detection.models import (
    CompiledDetection,
    DetectionResult,
    MatchedRule,
    SigmaDetectionMatch,
    SigmaRule,
)
from utils.rule_cache import RuleSetCache

logger = logging.getLogger(__name__)

LOGSOURCE_FIELDS = ("product", "service", "category")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class _CompiledRule:
    rule: SigmaRule
    detection: CompiledDetection
    logsource_filter: Dict[str, str]

    def accepts_logsource(self, event: Dict[str, Any]) -> bool:
        for key, expected in self.logsource_filter.items():
            actual = get_nested_value(event, key)
            if actual is None:
                metadata = event.get("metadata")
                if isinstance(metadata, dict):
                    actual = metadata.get(key)
            if actual is None or str(actual) != expected:
                return False
        return True


class SigmaDetectionEngine:
    """
    Evaluates log records against the enabled Sigma rules of a tenant.

    Rules come from a repository exposing
    ``list_enabled_rules(organization_id, project_id)``; the engine keeps no
    state of its own beyond the optional, caller-owned rule-set cache.
    """

    def __init__(self, repository: Any, cache: Optional[RuleSetCache] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.repository = repository
        self.cache = cache
        self.clock = clock

    def _compile(self, rule: SigmaRule) -> Optional[_CompiledRule]:
        try:
            detection = rule.compile()
        except Exception as e:
            # Stored rules were validated on import; a failure here means a corrupt record.
            logger.error(f"Skipping Sigma rule {rule.id!r} ({rule.title}): {e}")
            return None

        logsource = rule.logsource if isinstance(rule.logsource, dict) else {}
        logsource_filter = {
            key: str(logsource[key])
            for key in LOGSOURCE_FIELDS
            if logsource.get(key) not in (None, "")
        }
        return _CompiledRule(rule=rule, detection=detection, logsource_filter=logsource_filter)

    def _fetch_rules(self, organization_id: str, project_id: Optional[str]) -> List[SigmaRule]:
        rules = self.repository.list_enabled_rules(organization_id, project_id)
        return [
            rule for rule in rules
            if rule.organization_id == organization_id
            and (rule.project_id is None or rule.project_id == project_id)
        ]

    def load_rules(self, organization_id: str, project_id: Optional[str] = None) -> List[_CompiledRule]:
        """Fetch and compile the rule set that applies to one organization/project."""

        def loader() -> List[_CompiledRule]:
            compiled = []
            for rule in self._fetch_rules(organization_id, project_id):
                item = self._compile(rule)
                if item is not None:
                    compiled.append(item)
            logger.debug(f"Loaded {len(compiled)} Sigma rule(s) for org {organization_id} project {project_id}")
            return compiled

        if self.cache is None:
            return loader()
        return self.cache.get_or_load((organization_id, project_id), loader)

    def _evaluate(self, event: Dict[str, Any], rules: Sequence[_CompiledRule]) -> DetectionResult:
        matched_rules: List[MatchedRule] = []

        for compiled in rules:
            rule = compiled.rule
            if not compiled.accepts_logsource(event):
                continue
            try:
                if compiled.detection.matches(event):
                    matched_rules.append(MatchedRule(
                        sigma_rule_id=rule.id,
                        rule_title=rule.title,
                        rule_level=rule.level or "medium",
                        matched_at=self.clock(),
                        rule_tags=tuple(rule.tags),
                    ))
            except Exception as e:
                logger.error(f"Error evaluating rule {rule.title!r} ({rule.id}): {e}", exc_info=True)

        return DetectionResult(matched=bool(matched_rules), matched_rules=matched_rules)

    def evaluate_log(self, log: Dict[str, Any], organization_id: str,
                     project_id: Optional[str] = None) -> DetectionResult:
        rules = self.load_rules(organization_id, project_id)
        if not rules:
            return DetectionResult()
        return self._evaluate(log, rules)

    def evaluate_batch(self, logs: Sequence[Dict[str, Any]], organization_id: str,
                       project_id: Optional[str] = None) -> Dict[int, DetectionResult]:
        """
        Evaluate a batch of logs; the rule set is fetched once for the whole batch.

        Returns:
            {log_index: DetectionResult} for every log of the batch
        """
        rules = self.load_rules(organization_id, project_id)
        results: Dict[int, DetectionResult] = {}

        for index, log in enumerate(logs):
            results[index] = self._evaluate(log, rules) if rules else DetectionResult()

        matched = sum(1 for result in results.values() if result.matched)
        if matched:
            logger.info(f"Sigma detection: {matched}/{len(logs)} log(s) matched for org {organization_id}")
        return results


def collect_matches(results: Dict[int, DetectionResult]) -> List[SigmaDetectionMatch]:
    matches: List[SigmaDetectionMatch] = []
    for log_index in sorted(results):
        result = results[log_index]
        if not result.matched:
            continue
        for matched_rule in result.matched_rules:
            matches.append(SigmaDetectionMatch(
                log_index=log_index,
                sigma_rule_id=matched_rule.sigma_rule_id,
                rule_title=matched_rule.rule_title,
                rule_level=matched_rule.rule_level,
                matched_at=matched_rule.matched_at,
            ))
    return matches


def group_matches_by_rule(results: Dict[int, DetectionResult]) -> "OrderedDict[str, List[SigmaDetectionMatch]]":
    grouped: "OrderedDict[str, List[SigmaDetectionMatch]]" = OrderedDict()
    for match in collect_matches(results):
        grouped.setdefault(match.sigma_rule_id, []).append(match)
    return grouped
