"""TTL memo cache with least-recently-used trimming."""

from __future__ import annotations

import json
import logging
import re
import sys
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from personalize import metrics

logger = logging.getLogger("personalize.cache")

T = TypeVar("T")

_MISSING = object()


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    payload: T
    timestamp: float
    hit_count: int = 0
    last_access: float = 0.0
    size_estimate: int = 0


@dataclass(frozen=True, slots=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    hit_rate: float
    average_age: float
    memory_estimate: int


def estimate_size(value: Any) -> int:
    """Rough serialized size of ``value`` in bytes."""

    try:
        return len(json.dumps(value, default=str, separators=(",", ":")).encode("utf-8"))
    except (TypeError, ValueError):
        return sys.getsizeof(value)


class MemoCache:
    """Bounded in-memory memoization keyed by string.

    Entries expire after ``ttl`` on read. The periodic :meth:`sweep` drops entries
    older than ``max_age`` and then trims by ``last_access`` once the map holds more
    than ``max_entries`` items.
    """

    def __init__(
        self,
        *,
        ttl: float = 60.0,
        max_age: float | None = None,
        max_entries: int = 2000,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = float(ttl)
        self._max_age = float(max_age if max_age is not None else ttl)
        self._max_entries = int(max_entries)
        self._sweep_interval = max(0.0, float(sweep_interval))
        self._clock = clock or time.monotonic
        self._entries: "OrderedDict[str, CacheEntry[Any]]" = OrderedDict()
        self._lock = threading.RLock()
        self._last_sweep = self._clock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING, touch=False) is not _MISSING

    # --- Reads and writes ---

    def get(self, key: str, default: Any = None, *, ttl: float | None = None, touch: bool = True) -> Any:
        limit = self._ttl if ttl is None else float(ttl)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            now = self._clock()
            if now - entry.timestamp >= limit:
                return default
            if touch:
                entry.hit_count += 1
                entry.last_access = now
                self._entries.move_to_end(key)
            return entry.payload

    def put(self, key: str, value: T) -> T:
        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(
                payload=value,
                timestamp=now,
                last_access=now,
                size_estimate=estimate_size(value),
            )
            self._entries.move_to_end(key)
            metrics.CACHE_SIZE.set(len(self._entries))
        self.sweep()
        return value

    def memoize(self, key: str, compute: Callable[[], T], ttl: float | None = None) -> T:
        """Return the cached value for ``key`` or compute, store and return it."""

        with self._lock:
            cached = self.get(key, _MISSING, ttl=ttl)
            if cached is not _MISSING:
                self._hits += 1
                metrics.CACHE_HITS.inc()
                return cached
            self._misses += 1
            metrics.CACHE_MISSES.inc()
            value = compute()
            return self.put(key, value)

    def record(self, hit: bool) -> None:
        """Count a lookup done outside :meth:`memoize` (async callers)."""

        with self._lock:
            if hit:
                self._hits += 1
                metrics.CACHE_HITS.inc()
            else:
                self._misses += 1
                metrics.CACHE_MISSES.inc()

    def invalidate(self, pattern: str | None = None) -> int:
        """Drop keys matching the ``pattern`` regex, or everything when omitted."""

        with self._lock:
            if pattern is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                regex = re.compile(pattern)
                doomed = [key for key in self._entries if regex.search(key)]
                for key in doomed:
                    del self._entries[key]
                removed = len(doomed)
            metrics.CACHE_SIZE.set(len(self._entries))
        if removed:
            logger.debug("cache invalidated pattern=%s removed=%s", pattern, removed)
        return removed

    # --- Eviction ---

    def sweep(self, force: bool = False) -> int:
        """Expire old entries, then trim least-recently-used ones over the size cap."""

        with self._lock:
            now = self._clock()
            over_cap = len(self._entries) > self._max_entries
            if not force and not over_cap and now - self._last_sweep < self._sweep_interval:
                return 0
            self._last_sweep = now

            expired = [key for key, entry in self._entries.items() if now - entry.timestamp > self._max_age]
            for key in expired:
                del self._entries[key]

            trimmed = 0
            overflow = len(self._entries) - self._max_entries
            if overflow > 0:
                by_access = sorted(self._entries.items(), key=lambda item: item[1].last_access)
                for key, _ in by_access[:overflow]:
                    del self._entries[key]
                    trimmed += 1

            metrics.CACHE_SIZE.set(len(self._entries))
        if expired:
            metrics.CACHE_EVICTIONS.labels(reason="expired").inc(len(expired))
        if trimmed:
            metrics.CACHE_EVICTIONS.labels(reason="lru").inc(trimmed)
        return len(expired) + trimmed

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._clock()
            size = len(self._entries)
            ages = [now - entry.timestamp for entry in self._entries.values()]
            lookups = self._hits + self._misses
            return CacheStats(
                size=size,
                hits=self._hits,
                misses=self._misses,
                hit_rate=(self._hits / lookups) if lookups else 0.0,
                average_age=(sum(ages) / size) if size else 0.0,
                memory_estimate=sum(entry.size_estimate for entry in self._entries.values()),
            )

    def entry(self, key: str) -> CacheEntry[Any] | None:
        with self._lock:
            return self._entries.get(key)


__all__ = ["CacheEntry", "CacheStats", "MemoCache", "estimate_size"]
