from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from alerts.models import AlertRule
from utils.rule_lock import RuleLock

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertRuleEvaluator:
    """
    Windowed threshold evaluation of alert rules.

    Collaborators:
        rules: ``list_enabled_alert_rules() -> [AlertRule]``
        history: ``latest_history_for(rule_id)`` and ``create_history(rule_id, triggered_at, log_count)``
        log_store: ``count_logs(organization_id, project_id, service, levels, since, until)``
            counting logs with ``since < time <= until``

    The most recent history entry of a rule is its watermark: logs at or
    before it are never counted again.
    """

    def __init__(self, rules: Any, history: Any, log_store: Any, lock: Optional[RuleLock] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.rules = rules
        self.history = history
        self.log_store = log_store
        self.lock = lock or RuleLock()
        self.clock = clock
        self.last_failures: List[Tuple[str, str]] = []

    def _counting_floor(self, rule: AlertRule, now: datetime) -> datetime:
        window_start = now - timedelta(minutes=rule.time_window)
        latest = self.history.latest_history_for(rule.id)
        if latest is None:
            return window_start
        return max(window_start, latest.triggered_at)

    def check_rule(self, rule: AlertRule, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Count, compare and record one rule.

        Returns:
            Trigger descriptor if the threshold was reached, None otherwise
        """
        now = now or self.clock()

        with self.lock.hold(rule.id) as acquired:
            if not acquired:
                return None

            since = self._counting_floor(rule, now)
            count = self.log_store.count_logs(
                organization_id=rule.organization_id,
                project_id=rule.project_id,
                service=rule.service,
                levels=list(rule.level),
                since=since,
                until=now,
            )
            logger.debug(f"Alert rule {rule.name!r}: {count} log(s) since {since.isoformat()} (threshold {rule.threshold})")

            if count < rule.threshold:
                return None

            entry = self.history.create_history(rule_id=rule.id, triggered_at=now, log_count=count)

        logger.info(f"Alert rule triggered: {rule.name} ({count} logs >= {rule.threshold} in {rule.time_window} min)")
        return {
            'historyId': entry.id,
            'rule_id': rule.id,
            'rule_name': rule.name,
            'organization_id': rule.organization_id,
            'project_id': rule.project_id,
            'log_count': count,
            'threshold': rule.threshold,
            'time_window': rule.time_window,
            'email_recipients': list(rule.email_recipients),
            'webhook_url': rule.webhook_url,
        }

    def check_alert_rules(self) -> List[Dict[str, Any]]:
        """
        Evaluate every enabled alert rule once.

        A failing rule is logged and recorded in ``last_failures``; the scan
        continues with the remaining rules.
        """
        failures: List[Tuple[str, str]] = []
        triggered: List[Dict[str, Any]] = []

        try:
            rules = [rule for rule in self.rules.list_enabled_alert_rules() if rule.enabled]
        except Exception as e:
            logger.error(f"Failed to load alert rules: {e}", exc_info=True)
            self.last_failures = [("*", str(e))]
            return []

        now = self.clock()
        for rule in rules:
            try:
                descriptor = self.check_rule(rule, now=now)
            except Exception as e:
                logger.error(f"Error checking alert rule {rule.name!r} ({rule.id}): {e}", exc_info=True)
                failures.append((rule.id, str(e)))
                continue
            if descriptor:
                triggered.append(descriptor)

        self.last_failures = failures
        if failures:
            logger.warning(f"Alert check finished with {len(failures)} failed rule(s): {[rule_id for rule_id, _ in failures]}")
        logger.info(f"Alert check complete: {len(triggered)}/{len(rules)} rule(s) triggered")
        return triggered
