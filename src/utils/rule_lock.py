import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RuleLock:
    """
    Per-rule mutual exclusion for the read-count/compare/write-history step.

    Uses Redis (SET NX EX) when several evaluator instances share a broker,
    with a per-process lock table otherwise.
    """
    def __init__(self, ttl_seconds: int = 60, use_redis: bool = False, redis_config: Optional[Dict[str, Any]] = None,
                 redis_client: Any = None):
        self.ttl_seconds = ttl_seconds
        self.use_redis = use_redis or redis_client is not None
        self.redis_client = redis_client

        # In-process locks: {rule_id: Lock}
        self._locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

        if self.use_redis and self.redis_client is None and redis_config:
            try:
                import redis
                self.redis_client = redis.Redis(
                    host=redis_config.get('host', 'localhost'),
                    port=redis_config.get('port', 6379),
                    db=redis_config.get('db', 0),
                    password=redis_config.get('password'),
                    decode_responses=True
                )
                self.redis_client.ping()
                logger.info("Redis rule lock backend initialized")
            except Exception as e:
                logger.warning(f"Failed to connect to Redis, falling back to in-process locks: {e}")
                self.redis_client = None
                self.use_redis = False
        elif self.use_redis and self.redis_client is None:
            self.use_redis = False

        logger.info(f"Rule lock initialized (ttl: {ttl_seconds}s, backend: {'Redis' if self.use_redis else 'memory'})")

    def _key(self, rule_id: str) -> str:
        return f"alert_rule_lock:{rule_id}"

    def _acquire_memory(self, rule_id: str) -> Optional[threading.Lock]:
        with self._table_lock:
            lock = self._locks.setdefault(rule_id, threading.Lock())
        if lock.acquire(blocking=False):
            return lock
        return None

    def _acquire_redis(self, rule_id: str) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = self.redis_client.set(self._key(rule_id), token, nx=True, ex=self.ttl_seconds)
        return token if acquired else None

    def _release_redis(self, rule_id: str, token: str) -> None:
        try:
            self.redis_client.eval(_RELEASE_SCRIPT, 1, self._key(rule_id), token)
        except Exception as e:
            # The key still expires after ttl_seconds.
            logger.error(f"Failed to release rule lock for {rule_id}: {e}")

    @contextmanager
    def hold(self, rule_id: str) -> Iterator[bool]:
        """
        Try to take the lock for one rule without blocking.

        Yields:
            True if this caller owns the rule for the duration of the block
        """
        if self.use_redis and self.redis_client is not None:
            token = self._acquire_redis(rule_id)
            if token is None:
                logger.debug(f"Rule {rule_id} is locked by another evaluator")
                yield False
                return
            try:
                yield True
            finally:
                self._release_redis(rule_id, token)
            return

        lock = self._acquire_memory(rule_id)
        if lock is None:
            logger.debug(f"Rule {rule_id} is already being evaluated in this process")
            yield False
            return
        try:
            yield True
        finally:
            lock.release()
