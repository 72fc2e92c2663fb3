from __future__ import annotations

import asyncio

import pytest

from personalize.scheduler import AsyncioScheduler, ManualScheduler


def test_periodic_timer_fires_per_interval(scheduler):
    ticks: list[float] = []
    handle = scheduler.every(10.0, lambda: ticks.append(scheduler.now()))

    fired = scheduler.advance(35.0)

    assert fired == 3
    assert ticks == [10.0, 20.0, 30.0]
    assert scheduler.now() == 35.0

    handle.cancel()
    assert scheduler.advance(100.0) == 0
    assert scheduler.active == 0


def test_one_shot_timers_run_in_due_order(scheduler):
    order: list[str] = []
    scheduler.call_later(2.0, lambda: order.append("late"))
    scheduler.call_later(1.0, lambda: order.append("early"))
    cancelled = scheduler.call_later(1.5, lambda: order.append("cancelled"))
    cancelled.cancel()

    scheduler.advance(0.5)
    assert order == []
    scheduler.advance(5.0)

    assert order == ["early", "late"]
    assert cancelled.cancelled


def test_failing_callback_does_not_stop_the_clock(scheduler):
    hits: list[int] = []

    def broken():
        raise RuntimeError("boom")

    scheduler.every(1.0, broken)
    scheduler.every(1.0, lambda: hits.append(1))

    scheduler.advance(3.0)

    assert len(hits) == 3


def test_rejects_non_positive_interval(scheduler):
    with pytest.raises(ValueError):
        scheduler.every(0, lambda: None)


@pytest.mark.asyncio
async def test_coroutine_callbacks_are_drained():
    scheduler = ManualScheduler()
    done: list[str] = []

    async def job():
        done.append("ran")

    async def failing():
        raise RuntimeError("remote down")

    scheduler.call_later(1.0, job)
    scheduler.call_later(1.0, failing)
    scheduler.advance(1.0)
    assert len(scheduler.pending) == 2

    await scheduler.drain()

    assert done == ["ran"]
    assert scheduler.pending == []


@pytest.mark.asyncio
async def test_apscheduler_backend_runs_jobs():
    scheduler = AsyncioScheduler()
    scheduler.start()
    fired: list[str] = []

    async def async_job():
        fired.append("async")

    try:
        scheduler.call_later(0.01, lambda: fired.append("sync"))
        scheduler.call_later(0.01, async_job)
        for _ in range(100):
            if len(fired) == 2:
                break
            await asyncio.sleep(0.02)
        assert sorted(fired) == ["async", "sync"]

        periodic = scheduler.every(3600.0, lambda: None, name="hourly")
        periodic.cancel()
        periodic.cancel()
        assert periodic.cancelled
    finally:
        scheduler.shutdown()
