from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from detection.condition import ConditionSyntaxError
from detection.mitre import parse_from_tags
from detection.models import VALID_LEVELS, VALID_STATUSES, SigmaRule, compile_detection

logger = logging.getLogger(__name__)

_KNOWN_FIELDS = {
    "id", "title", "level", "status", "logsource", "detection", "description",
    "author", "tags", "references", "falsepositives",
}


class RuleValidationError(ValueError):
    """A Sigma rule document failed parsing or validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid Sigma rule")


@dataclass
class ParseResult:
    rule: Optional[SigmaRule]
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.rule is not None and not self.errors


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item) for item in value if item is not None]
    return [str(value)]


class SigmaParser:
    """
    Parses, validates and normalizes Sigma YAML rule documents.
    """

    @staticmethod
    def parse_yaml(content: str) -> Dict[str, Any]:
        """
        Parse a YAML document into a mapping.

        Raises:
            RuleValidationError: syntax error, empty document or non-mapping root
        """
        if content is None or not str(content).strip():
            raise RuleValidationError(["YAML parsing failed: document is empty"])
        try:
            parsed = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise RuleValidationError([f"YAML parsing failed: {e}"]) from e

        if parsed is None:
            raise RuleValidationError(["YAML parsing failed: document is empty"])
        if not isinstance(parsed, dict):
            raise RuleValidationError([f"Invalid YAML: expected object, got {type(parsed).__name__}"])
        return parsed

    @staticmethod
    def validate(doc: Dict[str, Any]) -> List[str]:
        """Collect every validation error of a parsed rule document."""
        errors: List[str] = []

        title = doc.get("title")
        if not title or not isinstance(title, str):
            errors.append('Missing or invalid "title" field')

        logsource = doc.get("logsource")
        if not isinstance(logsource, dict):
            errors.append('Missing or invalid "logsource" field')

        detection = doc.get("detection")
        if not detection or not isinstance(detection, dict):
            errors.append('Missing or invalid "detection" field')
        elif not detection.get("condition"):
            errors.append('Missing "detection.condition" field')
        else:
            try:
                compile_detection(detection)
            except ConditionSyntaxError as e:
                errors.append(str(e))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                errors.append(f'Invalid "detection" block: {e}')

        level = doc.get("level")
        if level and level not in VALID_LEVELS:
            errors.append(f'Invalid "level": {level}. Must be one of: {", ".join(VALID_LEVELS)}')

        status = doc.get("status")
        if status and status not in VALID_STATUSES:
            errors.append(f'Invalid "status": {status}. Must be one of: {", ".join(VALID_STATUSES)}')

        return errors

    @staticmethod
    def normalize(doc: Dict[str, Any]) -> SigmaRule:
        rule_id = doc.get("id")
        tags = _as_str_list(doc.get("tags"))
        tactics, techniques = parse_from_tags(tags)
        rule = SigmaRule(
            id=str(rule_id) if rule_id not in (None, "") else str(uuid.uuid4()),
            title=doc["title"],
            detection=doc["detection"],
            logsource=doc.get("logsource") or {},
            level=doc.get("level") or "medium",
            status=doc.get("status") or "stable",
            description=doc.get("description"),
            author=doc.get("author"),
            tags=tags,
            references=_as_str_list(doc.get("references")),
            falsepositives=_as_str_list(doc.get("falsepositives")),
            mitre_tactics=tactics,
            mitre_techniques=techniques,
            extra={k: v for k, v in doc.items() if k not in _KNOWN_FIELDS},
        )
        rule.compile()
        return rule

    @classmethod
    def parse(cls, content: str) -> ParseResult:
        """
        Parse, validate, and normalize a Sigma YAML document.

        Returns:
            ParseResult with the normalized rule, or rule=None and every error found
        """
        try:
            doc = cls.parse_yaml(content)
        except RuleValidationError as e:
            return ParseResult(rule=None, errors=e.errors)

        errors = cls.validate(doc)
        if errors:
            logger.debug(f"Sigma rule {doc.get('title')!r} failed validation: {errors}")
            return ParseResult(rule=None, errors=errors)

        return ParseResult(rule=cls.normalize(doc), errors=[])

    @classmethod
    def parse_or_raise(cls, content: str) -> SigmaRule:
        result = cls.parse(content)
        if result.rule is None:
            raise RuleValidationError(result.errors)
        return result.rule
