import json
import time
import logging
from datetime import datetime, timedelta, timezone
from clickhouse_driver import Client
from typing import List, Dict, Any, Optional, Set
from utils.checkpoint import CheckpointManager

logger = logging.getLogger(__name__)

LOG_COLUMNS = ('time', 'organization_id', 'project_id', 'service', 'level', 'message', 'metadata')


def build_client(config: Dict[str, Any]) -> Client:
    client_config = {
        'host': config['host'],
        'port': config.get('port', 9000),
        'database': config.get('database', 'default'),
    }

    # Add authentication if provided
    if 'user' in config:
        client_config['user'] = config['user']
    if 'password' in config:
        client_config['password'] = config['password']

    return Client(**client_config)


class ClickHouseConsumer:
    """
    Reads the `logs` table: polls new rows for Sigma detection and counts
    rows in a time window for threshold alert rules.
    """
    def __init__(self, config: Dict[str, Any], checkpoint_manager: Optional[CheckpointManager] = None,
                 client: Optional[Client] = None):
        self.client = client or build_client(config)
        self.table = config.get('table', 'logs')
        self.batch_size = config.get('batch_size', 1000)
        self.retry_count = config.get('retry_count', 3)
        self.retry_delay = config.get('retry_delay', 1)
        self.checkpoint_manager = checkpoint_manager
        # Fingerprints of delivered rows stamped with last_query_time; None until the first batch.
        self._seen_at_cursor: Optional[Set[str]] = None

        saved_checkpoint = self.checkpoint_manager.load() if self.checkpoint_manager else None
        if saved_checkpoint is not None:
            self.last_query_time = saved_checkpoint
            logger.info(f"Resuming from saved checkpoint: {self.last_query_time.isoformat()}")
        elif config.get('initial_start_mode', 'now') == 'beginning':
            self.last_query_time = datetime.fromtimestamp(0, tz=timezone.utc)
            logger.info("No checkpoint found. Starting from the beginning (processing all historical logs)")
        else:
            self.last_query_time = datetime.now(timezone.utc)
            logger.info("No checkpoint found. Starting from current time (only new logs will be processed)")

        logger.info(f"ClickHouse consumer initialized (table: {self.table}, batch size: {self.batch_size})")

    def _execute(self, query: str, params: Dict[str, Any], with_column_types: bool = False):
        retry_delay = self.retry_delay

        for attempt in range(self.retry_count):
            try:
                logger.debug(f"Querying ClickHouse (attempt {attempt + 1}/{self.retry_count})")
                return self.client.execute(query, params, with_column_types=with_column_types)
            except Exception as e:
                logger.error(f"ClickHouse query failed (attempt {attempt + 1}/{self.retry_count}): {e}")
                if attempt < self.retry_count - 1:
                    logger.info(f"Retrying in {retry_delay} seconds...")
                    time.sleep(retry_delay)
                    retry_delay *= 2
                else:
                    logger.error(f"Failed query: {query.strip()}")
                    raise

    def _row_to_log(self, row: Dict[str, Any]) -> Dict[str, Any]:
        log = dict(row)
        raw_metadata = log.get('metadata')
        if isinstance(raw_metadata, str):
            try:
                log['metadata'] = json.loads(raw_metadata) if raw_metadata else {}
            except ValueError:
                log['metadata'] = {'raw': raw_metadata}
        log_time = log.get('time')
        if isinstance(log_time, datetime) and log_time.tzinfo is None:
            log['time'] = log_time.replace(tzinfo=timezone.utc)
        return log

    def fetch_logs(self) -> List[Dict[str, Any]]:
        """
        Polls ClickHouse for logs newer than the last processed one.
        Advances (and persists) the cursor to the newest log fetched.

        Rows sharing the cursor timestamp may be split across batches, so once
        a batch has been read the next query includes the cursor timestamp and
        drops the boundary rows already returned.

        Returns:
            Logs ordered by time; empty list when the query keeps failing
        """
        seen = self._seen_at_cursor
        since_op = '>' if seen is None else '>='
        limit = int(self.batch_size) + (len(seen) if seen else 0)
        query = f"""
            SELECT {', '.join(LOG_COLUMNS)}
            FROM {self.table}
            WHERE time {since_op} %(since)s
            ORDER BY time
            LIMIT {limit}
        """

        try:
            data, columns = self._execute(query, {'since': self.last_query_time}, with_column_types=True)
        except Exception:
            return []

        column_names = [col[0] for col in columns]
        previous_cursor = self.last_query_time
        logs: List[Dict[str, Any]] = []
        fingerprints: List[str] = []
        for row in data:
            fingerprint = repr(tuple(row))
            log = self._row_to_log(dict(zip(column_names, row)))
            if seen and log.get('time') == previous_cursor and fingerprint in seen:
                continue
            logs.append(log)
            fingerprints.append(fingerprint)

        if logs:
            self.last_query_time = logs[-1]['time']
            at_cursor = {fp for fp, log in zip(fingerprints, logs) if log.get('time') == self.last_query_time}
            if seen is not None and self.last_query_time == previous_cursor:
                at_cursor |= seen
            self._seen_at_cursor = at_cursor
            if self.checkpoint_manager:
                self.checkpoint_manager.save(self.last_query_time, logs_count=len(logs))
            logger.info(f"Fetched {len(logs)} logs. New checkpoint: {self.last_query_time.isoformat()}")

        return logs

    def count_logs(self, organization_id: str, project_id: Optional[str], service: Optional[str],
                   levels: List[str], since: datetime, until: datetime) -> int:
        """
        Count logs with ``since < time <= until`` in the rule's scope.

        Org-wide rules (project_id None) count every project of the organization.
        Failures propagate to the caller.
        """
        if not levels:
            return 0

        where = [
            "organization_id = %(organization_id)s",
            "time > %(since)s",
            "time <= %(until)s",
            "level IN %(levels)s",
        ]
        params: Dict[str, Any] = {
            'organization_id': organization_id,
            'since': since,
            'until': until,
            'levels': tuple(levels),
        }
        if project_id is not None:
            where.append("project_id = %(project_id)s")
            params['project_id'] = project_id
        if service is not None:
            where.append("service = %(service)s")
            params['service'] = service

        query = f"SELECT count() FROM {self.table} WHERE {' AND '.join(where)}"
        rows = self._execute(query, params)
        return int(rows[0][0]) if rows else 0

    def lag(self) -> timedelta:
        return datetime.now(timezone.utc) - self.last_query_time
