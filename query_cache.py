"""
In-process cache for KPI query results.

Each server instance keeps its own store; nothing is persisted or shared.
"""

import json
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

import config

logger = logging.getLogger(__name__)


class CacheEntry(NamedTuple):
    data: Any
    timestamp: float


def generate_key(prefix: str, params: Any) -> str:
    """Deterministic key: same prefix and structurally-equal params give the same string."""
    return f"{prefix}:{json.dumps(params, sort_keys=True, separators=(',', ':'), default=str)}"


class QueryCache:
    """TTL cache keyed by query prefix + request parameters."""

    def __init__(self, ttl_seconds: float = config.KPI_CACHE_TTL_SECONDS,
                 clock: Callable[[], float] = time.time,
                 store: Optional[Dict[str, CacheEntry]] = None):
        self._store: Dict[str, CacheEntry] = store if store is not None else {}
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    generate_key = staticmethod(generate_key)

    def get(self, key: str) -> Any:
        """Get value from cache if not expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() - entry.timestamp <= self._ttl:
                return entry.data
            # Expired, remove it
            del self._store[key]
            return None

    def set(self, key: str, value: Any) -> None:
        entry = CacheEntry(data=value, timestamp=self._clock())
        with self._lock:
            self._store[key] = entry

    async def with_cache(self, key: str, producer: Callable[[], Awaitable[Any]]) -> Any:
        # Two concurrent misses on one key may both run the producer; last write wins.
        cached = self.get(key)
        if cached is not None:
            logger.info("Cache hit: %s", key.split(':', 1)[0])
            return cached
        value = await producer()
        self.set(key, value)
        return value

    def invalidate(self, pattern: str = None) -> int:
        """Invalidate cache entries. If pattern provided, only matching keys."""
        with self._lock:
            if pattern is None:
                count = len(self._store)
                self._store.clear()
                return count
            keys_to_remove = [k for k in self._store if pattern in k]
            for k in keys_to_remove:
                del self._store[k]
            return len(keys_to_remove)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


# Shared by the HTTP layer (12-hour TTL by default)
query_cache = QueryCache()
