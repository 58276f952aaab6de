"""In-process TTL cache for audit query results.

Bounded LRU with per-entry expiry.  Hit/miss counters feed the cache hit
ratio reported in each metric snapshot; ``flush()`` is the cache-eviction
remediation step.
"""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable

from audit_recovery.observability.metrics import CACHE_HIT_RATIO

logger = logging.getLogger(__name__)


class QueryCache:
    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, object]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> object | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def set(self, key: str, value: object, ttl: float | None = None) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + (ttl if ttl is not None else self._ttl), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def flush(self) -> int:
        """Drop every entry and reset the hit statistics. Returns entries evicted."""
        with self._lock:
            evicted = len(self._entries)
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        CACHE_HIT_RATIO.set(1.0)
        logger.info("Query cache flushed (%d entries evicted)", evicted)
        return evicted

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_ratio(self) -> float:
        """Fraction of lookups served from cache; 1.0 when nothing was looked up yet."""
        total = self.hits + self.misses
        ratio = self.hits / total if total else 1.0
        CACHE_HIT_RATIO.set(ratio)
        return ratio
