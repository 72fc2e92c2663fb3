"""Collapse identical concurrent computations into one in-flight task."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Tuple, TypeVar

from personalize import metrics
from personalize.cache.memo import MemoCache

logger = logging.getLogger("personalize.cache")

T = TypeVar("T")


class RequestDeduplicator:
    """Concurrent callers with the same key share one awaited result."""

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> Tuple[T, bool]:
        """Execute ``factory`` once per in-flight ``key`` and return (result, is_owner)."""

        future = self._inflight.get(key)
        if future is not None:
            metrics.DEDUP_COLLAPSED.inc()
            result = await asyncio.shield(future)
            return result, False

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._inflight[key] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            if not future.done():
                future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
                # waiters re-raise it; mark retrieved for the owner-only case
                future.exception()
            raise
        else:
            if not future.done():
                future.set_result(result)
            return result, True
        finally:
            if self._inflight.get(key) is future:
                del self._inflight[key]

    async def cached(
        self,
        cache: MemoCache,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        """Async memoize: serve from ``cache`` or run ``factory`` once across concurrent callers."""

        missing = object()
        value = cache.get(key, missing, ttl=ttl)
        if value is not missing:
            cache.record(hit=True)
            return value
        cache.record(hit=False)
        result, owner = await self.run(key, factory)
        if owner:
            cache.put(key, result)
        return result


def make_request_key(*parts: object | None) -> str:
    """Create a compact cache key from arbitrary JSON-able parts."""

    tokens = [str(part).strip() for part in parts if part is not None and str(part).strip()]
    raw = ":".join(tokens)
    if len(raw) <= 96:
        return raw
    digest = hashlib.sha1(json.dumps(tokens, sort_keys=True).encode("utf-8")).hexdigest()
    return f"{tokens[0]}:{digest}"


__all__ = ["RequestDeduplicator", "make_request_key"]
