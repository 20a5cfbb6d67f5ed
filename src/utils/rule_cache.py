import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class RuleSetCache:
    """
    Time-bounded cache of compiled rule sets keyed by (organization_id, project_id).

    Passed explicitly to the detection engine so callers control lifetime and
    invalidation; a rule edit is visible once its entry expires or is invalidated.
    """
    def __init__(self, ttl_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

        # {key: (stored_at, value)}
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self.hits = 0
        self.misses = 0

        logger.info(f"Rule set cache initialized (ttl: {ttl_seconds}s)")

    def _expired(self, stored_at: float, now: float) -> bool:
        return self.ttl_seconds <= 0 or now - stored_at >= self.ttl_seconds

    def get(self, key: Hashable) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            stored_at, value = entry
            if self._expired(stored_at, now):
                del self._entries[key]
                self.misses += 1
                logger.debug(f"Rule set cache entry expired: {key}")
                return None
            self.hits += 1
            return value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is not None:
            return value
        value = loader()
        self.put(key, value)
        return value

    def invalidate(self, organization_id: Optional[str] = None) -> int:
        """
        Drop cached rule sets.

        Args:
            organization_id: Only drop entries of this organization (all entries when None)

        Returns:
            Number of entries removed
        """
        with self._lock:
            if organization_id is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                keys: List[Hashable] = [
                    key for key in self._entries
                    if isinstance(key, tuple) and key and key[0] == organization_id
                ]
                for key in keys:
                    del self._entries[key]
                removed = len(keys)

        if removed:
            logger.debug(f"Invalidated {removed} cached rule set(s) (organization: {organization_id or 'all'})")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
        return {
            'cached_rule_sets': size,
            'hits': self.hits,
            'misses': self.misses,
            'ttl_seconds': self.ttl_seconds
        }
