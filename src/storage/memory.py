from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from alerts.models import AlertHistoryEntry, AlertRule
from detection.models import SigmaRule

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """A repository read or write failed."""


def _as_utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise PersistenceError(f"Unsupported log time value: {value!r}")


class ProjectDirectory:
    """Which organization owns which project."""

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add_project(self, project_id: str, organization_id: str) -> None:
        with self._lock:
            self._owners[project_id] = organization_id

    def organization_of(self, project_id: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(project_id)

    def project_ids_for(self, organization_id: str) -> Set[str]:
        with self._lock:
            return {pid for pid, org in self._owners.items() if org == organization_id}


class InMemoryLogStore:
    """
    Log records keyed by project, counted for windowed alert rules.
    """

    def __init__(self, projects: Optional[ProjectDirectory] = None):
        self.projects = projects or ProjectDirectory()
        self._logs: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def add_log(self, project_id: str, log: Dict[str, Any]) -> Dict[str, Any]:
        if self.projects.organization_of(project_id) is None:
            raise PersistenceError(f"Unknown project: {project_id}")
        record = dict(log)
        record["time"] = _as_utc(record.get("time") or datetime.now(timezone.utc))
        record["project_id"] = project_id
        with self._lock:
            self._logs.append(record)
        return record

    def add_logs(self, project_id: str, logs: Iterable[Dict[str, Any]]) -> int:
        count = 0
        for log in logs:
            self.add_log(project_id, log)
            count += 1
        return count

    def count_logs(self, organization_id: str, project_id: Optional[str], service: Optional[str],
                   levels: List[str], since: datetime, until: datetime) -> int:
        if project_id is not None:
            if self.projects.organization_of(project_id) != organization_id:
                return 0
            project_ids = {project_id}
        else:
            project_ids = self.projects.project_ids_for(organization_id)
        if not project_ids:
            return 0

        allowed_levels = set(levels)
        with self._lock:
            snapshot = list(self._logs)

        return sum(
            1 for log in snapshot
            if log["project_id"] in project_ids
            and log.get("level") in allowed_levels
            and (service is None or log.get("service") == service)
            and since < log["time"] <= until
        )


class InMemorySigmaRuleRepository:
    def __init__(self, rules: Optional[Iterable[SigmaRule]] = None):
        self._rules: Dict[str, SigmaRule] = {}
        self._lock = threading.Lock()
        for rule in rules or ():
            self.save(rule)

    def _key(self, rule: SigmaRule) -> str:
        return f"{rule.organization_id}:{rule.id}"

    def save(self, rule: SigmaRule) -> SigmaRule:
        if not rule.organization_id:
            raise PersistenceError(f"Sigma rule {rule.id} has no organization")
        with self._lock:
            self._rules[self._key(rule)] = rule
        return rule

    def replace_all(self, rules: Iterable[SigmaRule]) -> None:
        """Swap the whole rule set in one step; rules missing from ``rules`` are dropped."""
        replacement: Dict[str, SigmaRule] = {}
        for rule in rules:
            if not rule.organization_id:
                raise PersistenceError(f"Sigma rule {rule.id} has no organization")
            replacement[self._key(rule)] = rule
        with self._lock:
            self._rules = replacement

    def get(self, rule_id: str, organization_id: str) -> Optional[SigmaRule]:
        with self._lock:
            return self._rules.get(f"{organization_id}:{rule_id}")

    def delete(self, rule_id: str, organization_id: str) -> bool:
        with self._lock:
            return self._rules.pop(f"{organization_id}:{rule_id}", None) is not None

    def list_rules(self, organization_id: str) -> List[SigmaRule]:
        with self._lock:
            return [rule for rule in self._rules.values() if rule.organization_id == organization_id]

    def list_enabled_rules(self, organization_id: str, project_id: Optional[str] = None) -> List[SigmaRule]:
        """Active rules of the organization: org-wide ones plus those of ``project_id``."""
        with self._lock:
            rules = list(self._rules.values())
        return [
            rule for rule in rules
            if rule.organization_id == organization_id
            and rule.is_active
            and (rule.project_id is None or rule.project_id == project_id)
        ]


class InMemoryAlertRuleRepository:
    def __init__(self, rules: Optional[Iterable[AlertRule]] = None):
        self._rules: Dict[str, AlertRule] = {}
        self._lock = threading.Lock()
        for rule in rules or ():
            self.save(rule)

    def save(self, rule: AlertRule) -> AlertRule:
        with self._lock:
            self._rules[rule.id] = rule
        return rule

    def replace_all(self, rules: Iterable[AlertRule]) -> None:
        """Swap the whole rule set in one step; rules missing from ``rules`` are dropped."""
        replacement = {rule.id: rule for rule in rules}
        with self._lock:
            self._rules = replacement

    def create(self, **fields: Any) -> AlertRule:
        fields.setdefault("id", str(uuid.uuid4()))
        return self.save(AlertRule(**fields))

    def get(self, rule_id: str) -> Optional[AlertRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def set_enabled(self, rule_id: str, enabled: bool) -> Optional[AlertRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is not None:
                rule.enabled = enabled
            return rule

    def delete(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def list_enabled_alert_rules(self) -> List[AlertRule]:
        with self._lock:
            return [copy.copy(rule) for rule in self._rules.values() if rule.enabled]


class InMemoryAlertHistoryRepository:
    def __init__(self):
        self._entries: Dict[str, AlertHistoryEntry] = {}
        self._lock = threading.Lock()

    def create_history(self, rule_id: str, triggered_at: datetime, log_count: int) -> AlertHistoryEntry:
        entry = AlertHistoryEntry(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            triggered_at=triggered_at,
            log_count=log_count,
        )
        with self._lock:
            self._entries[entry.id] = entry
        return entry

    def latest_history_for(self, rule_id: str) -> Optional[AlertHistoryEntry]:
        with self._lock:
            entries = [entry for entry in self._entries.values() if entry.rule_id == rule_id]
        if not entries:
            return None
        return max(entries, key=lambda entry: entry.triggered_at)

    def history_for(self, rule_id: str) -> List[AlertHistoryEntry]:
        with self._lock:
            entries = [entry for entry in self._entries.values() if entry.rule_id == rule_id]
        return sorted(entries, key=lambda entry: entry.triggered_at, reverse=True)

    def get(self, history_id: str) -> Optional[AlertHistoryEntry]:
        with self._lock:
            return self._entries.get(history_id)

    def mark_as_notified(self, history_id: Optional[str], error: Optional[str] = None) -> None:
        if history_id is None:
            return
        with self._lock:
            entry = self._entries.get(history_id)
            if entry is None:
                logger.debug(f"mark_as_notified: no alert history entry {history_id}")
                return
            entry.notified = True
            entry.error = error or None
