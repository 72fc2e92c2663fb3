"""Timer port used for periodic recompute, sweeps and deferred work."""

from __future__ import annotations

import heapq
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("personalize.scheduler")

Callback = Callable[[], Any]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Minimal scheduling surface shared by runtime and test schedulers."""

    def now(self) -> float: ...

    def every(self, interval: float, fn: Callback, *, name: str | None = None) -> TimerHandle: ...

    def call_later(self, delay: float, fn: Callback, *, name: str | None = None) -> TimerHandle: ...


def _run_callback(fn: Callback, name: str) -> Any:
    try:
        return fn()
    except Exception:
        logger.exception("timer callback failed name=%s", name)
        return None


# --- Deterministic scheduler -------------------------------------------------


@dataclass(order=True)
class _ManualTimer:
    due: float
    seq: int
    interval: float | None = field(compare=False)
    fn: Callback = field(compare=False)
    name: str = field(compare=False)
    _cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Scheduler driven by :meth:`advance`; time only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._queue: list[_ManualTimer] = []
        self._seq = itertools.count()
        self.pending: list[Awaitable[Any]] = []

    def now(self) -> float:
        return self._now

    def every(self, interval: float, fn: Callback, *, name: str | None = None) -> _ManualTimer:
        if interval <= 0:
            raise ValueError("interval must be positive")
        timer = _ManualTimer(self._now + interval, next(self._seq), interval, fn, name or _name_of(fn))
        heapq.heappush(self._queue, timer)
        return timer

    def call_later(self, delay: float, fn: Callback, *, name: str | None = None) -> _ManualTimer:
        timer = _ManualTimer(self._now + max(0.0, delay), next(self._seq), None, fn, name or _name_of(fn))
        heapq.heappush(self._queue, timer)
        return timer

    def advance(self, seconds: float) -> int:
        """Move the clock forward, firing every timer that falls due. Returns the fire count."""

        target = self._now + max(0.0, seconds)
        fired = 0
        while self._queue and self._queue[0].due <= target:
            timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = timer.due
            result = _run_callback(timer.fn, timer.name)
            fired += 1
            if inspect.isawaitable(result):
                self.pending.append(result)
            if timer.interval is not None and not timer.cancelled:
                timer.due += timer.interval
                timer.seq = next(self._seq)
                heapq.heappush(self._queue, timer)
        self._now = target
        return fired

    async def drain(self) -> None:
        """Await coroutines returned by fired callbacks."""

        while self.pending:
            awaitable = self.pending.pop(0)
            try:
                await awaitable
            except Exception:
                logger.exception("scheduled coroutine failed")

    @property
    def active(self) -> int:
        return sum(1 for timer in self._queue if not timer.cancelled)


# --- APScheduler-backed runtime scheduler ---------------------------------------


def _name_of(fn: Callback) -> str:
    return getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or repr(fn)


def _wrap_job(fn: Callback, *, name: str) -> Callable[[], Awaitable[Any]]:
    """Wrap a callback so APScheduler runs it on the loop, logging and swallowing errors."""

    @wraps(fn)
    async def _inner() -> Any:
        started = time.perf_counter()
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.exception("job failed name=%s duration=%.3f", name, time.perf_counter() - started)
            return None
        logger.debug("job finished name=%s duration=%.3f", name, time.perf_counter() - started)
        return result

    return _inner


class _JobHandle:
    def __init__(self, scheduler: AsyncIOScheduler, job_id: str) -> None:
        self._scheduler = scheduler
        self._job_id = job_id
        self._cancelled = False

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        try:
            self._scheduler.remove_job(self._job_id)
        except JobLookupError:
            # one-shot job already ran
            pass

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioScheduler:
    """Runtime scheduler on top of APScheduler's :class:`AsyncIOScheduler`."""

    def __init__(self, scheduler: AsyncIOScheduler | None = None) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
        )
        self._ids = itertools.count()

    def now(self) -> float:
        return time.monotonic()

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("scheduler started")

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("scheduler stopped")

    def every(self, interval: float, fn: Callback, *, name: str | None = None) -> _JobHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        job_name = name or _name_of(fn)
        job = self._scheduler.add_job(
            _wrap_job(fn, name=job_name),
            trigger=IntervalTrigger(seconds=interval),
            id=f"{job_name}:{next(self._ids)}",
            name=job_name,
        )
        return _JobHandle(self._scheduler, job.id)

    def call_later(self, delay: float, fn: Callback, *, name: str | None = None) -> _JobHandle:
        job_name = name or _name_of(fn)
        run_at = datetime.now(timezone.utc) + timedelta(seconds=max(0.0, delay))
        job = self._scheduler.add_job(
            _wrap_job(fn, name=job_name),
            trigger=DateTrigger(run_date=run_at),
            id=f"{job_name}:{next(self._ids)}",
            name=job_name,
        )
        return _JobHandle(self._scheduler, job.id)


__all__ = ["AsyncioScheduler", "ManualScheduler", "Scheduler", "TimerHandle"]
