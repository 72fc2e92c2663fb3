"""Batching, throttling and debouncing on top of the scheduler port."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from personalize.scheduler import Scheduler, TimerHandle

logger = logging.getLogger("personalize.cache")


class Debounced:
    """Callable wrapper that postpones ``fn`` until calls stop for ``delay`` seconds.

    With ``immediate`` the first call of a burst runs at once and the rest of the
    burst is dropped; the window restarts on every call.
    """

    def __init__(self, scheduler: Scheduler, fn: Callable[..., Any], delay: float, immediate: bool = False) -> None:
        self._scheduler = scheduler
        self._fn = fn
        self._delay = max(0.0, float(delay))
        self._immediate = immediate
        self._timer: TimerHandle | None = None
        self._args: tuple[Any, ...] = ()
        self._kwargs: dict[str, Any] = {}

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.cancelled

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        call_now = self._immediate and not self.pending
        if self._timer is not None:
            self._timer.cancel()
        self._args, self._kwargs = args, kwargs
        self._timer = self._scheduler.call_later(self._delay, self._fire, name="debounce")
        if call_now:
            return self._fn(*args, **kwargs)
        return None

    def _fire(self) -> Any:
        self._timer = None
        if self._immediate:
            return None
        return self._fn(*self._args, **self._kwargs)

    def flush(self) -> Any:
        """Run a pending trailing call right away."""

        if not self.pending:
            return None
        assert self._timer is not None
        self._timer.cancel()
        return self._fire()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None


class Throttled:
    """Drops calls that arrive less than ``interval`` seconds after the last accepted one."""

    def __init__(self, scheduler: Scheduler, fn: Callable[..., Any], interval: float) -> None:
        self._scheduler = scheduler
        self._fn = fn
        self._interval = max(0.0, float(interval))
        self._last: float | None = None
        self.dropped = 0

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        now = self._scheduler.now()
        if self._last is not None and now - self._last < self._interval:
            self.dropped += 1
            return None
        self._last = now
        return self._fn(*args, **kwargs)


class RateLimiter:
    """Factory and registry for deferred, throttled and debounced work."""

    def __init__(self, scheduler: Scheduler, *, batch_delay: float = 0.010, throttle_interval: float = 0.008) -> None:
        self._scheduler = scheduler
        self._batch_delay = batch_delay
        self._throttle_interval = throttle_interval
        self._batches: Dict[str, TimerHandle] = {}
        self._debounced: list[Debounced] = []

    def batch(self, key: str, work: Callable[[], Any], delay: float | None = None) -> TimerHandle:
        """Run ``work`` once after ``delay``; a newer call for ``key`` supersedes the pending one."""

        previous = self._batches.pop(key, None)
        if previous is not None:
            previous.cancel()
            logger.debug("batch superseded key=%s", key)

        def _run() -> Any:
            self._batches.pop(key, None)
            return work()

        handle = self._scheduler.call_later(
            self._batch_delay if delay is None else delay,
            _run,
            name=f"batch:{key}",
        )
        self._batches[key] = handle
        return handle

    def has_pending(self, key: str) -> bool:
        handle = self._batches.get(key)
        return handle is not None and not handle.cancelled

    def throttle(self, fn: Callable[..., Any], interval: float | None = None) -> Throttled:
        return Throttled(self._scheduler, fn, self._throttle_interval if interval is None else interval)

    def debounce(self, fn: Callable[..., Any], delay: float, immediate: bool = False) -> Debounced:
        debounced = Debounced(self._scheduler, fn, delay, immediate)
        self._debounced.append(debounced)
        return debounced

    def cancel_all(self) -> None:
        for handle in self._batches.values():
            handle.cancel()
        self._batches.clear()
        for debounced in self._debounced:
            debounced.cancel()


__all__ = ["Debounced", "RateLimiter", "Throttled"]
