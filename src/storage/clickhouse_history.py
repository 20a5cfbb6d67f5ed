import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from alerts.models import AlertHistoryEntry
from storage.memory import PersistenceError

logger = logging.getLogger(__name__)

HISTORY_DDL = """
    CREATE TABLE IF NOT EXISTS {table} (
        id String,
        rule_id String,
        triggered_at DateTime64(6, 'UTC'),
        log_count UInt64,
        notified UInt8 DEFAULT 0,
        error Nullable(String)
    )
    ENGINE = MergeTree
    ORDER BY (rule_id, triggered_at)
"""


class ClickHouseAlertHistoryRepository:
    """
    `alert_history` rows in ClickHouse. The newest row of a rule is the
    watermark read by the alert rule evaluator.
    """
    def __init__(self, client: Any, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.client = client
        self.table = config.get('history_table', 'alert_history')
        if config.get('create_table', True):
            self._run(HISTORY_DDL.format(table=self.table))
        logger.info(f"Alert history repository initialized (table: {self.table})")

    def _run(self, query: str, params: Optional[Dict[str, Any]] = None):
        try:
            return self.client.execute(query, params or {})
        except Exception as e:
            raise PersistenceError(f"alert_history query failed: {e}") from e

    def create_history(self, rule_id: str, triggered_at: datetime, log_count: int) -> AlertHistoryEntry:
        entry = AlertHistoryEntry(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            triggered_at=triggered_at,
            log_count=log_count,
        )
        self._run(
            f"INSERT INTO {self.table} (id, rule_id, triggered_at, log_count, notified, error) VALUES",
            [(entry.id, entry.rule_id, entry.triggered_at, entry.log_count, 0, None)],
        )
        return entry

    def latest_history_for(self, rule_id: str) -> Optional[AlertHistoryEntry]:
        rows = self._run(
            f"""
            SELECT id, rule_id, triggered_at, log_count, notified, error
            FROM {self.table}
            WHERE rule_id = %(rule_id)s
            ORDER BY triggered_at DESC
            LIMIT 1
            """,
            {'rule_id': rule_id},
        )
        if not rows:
            return None

        history_id, row_rule_id, triggered_at, log_count, notified, error = rows[0]
        if isinstance(triggered_at, datetime) and triggered_at.tzinfo is None:
            triggered_at = triggered_at.replace(tzinfo=timezone.utc)
        return AlertHistoryEntry(
            id=history_id,
            rule_id=row_rule_id,
            triggered_at=triggered_at,
            log_count=int(log_count),
            notified=bool(notified),
            error=error,
        )

    def mark_as_notified(self, history_id: Optional[str], error: Optional[str] = None) -> None:
        if history_id is None:
            return
        # An unknown id updates no rows.
        self._run(
            f"ALTER TABLE {self.table} UPDATE notified = 1, error = %(error)s WHERE id = %(id)s",
            {'id': history_id, 'error': error or None},
        )
