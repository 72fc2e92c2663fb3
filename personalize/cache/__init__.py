"""Memoization, request de-duplication and rate limiting primitives."""

from personalize.cache.dedup import RequestDeduplicator, make_request_key
from personalize.cache.memo import CacheEntry, CacheStats, MemoCache
from personalize.cache.ratelimit import Debounced, RateLimiter, Throttled

__all__ = [
    "CacheEntry",
    "CacheStats",
    "Debounced",
    "MemoCache",
    "RateLimiter",
    "RequestDeduplicator",
    "Throttled",
    "make_request_key",
]
