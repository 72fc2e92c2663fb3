from __future__ import annotations

from personalize.cache import RateLimiter


def test_debounce_runs_trailing_call_once(scheduler):
    limiter = RateLimiter(scheduler)
    seen: list[str] = []
    debounced = limiter.debounce(seen.append, 0.5)

    debounced("a")
    scheduler.advance(0.2)
    debounced("b")
    scheduler.advance(0.2)
    debounced("c")
    assert seen == []

    scheduler.advance(0.5)
    assert seen == ["c"]
    assert not debounced.pending


def test_immediate_debounce_fires_leading_call_only(scheduler):
    limiter = RateLimiter(scheduler)
    seen: list[int] = []
    debounced = limiter.debounce(seen.append, 1.0, immediate=True)

    debounced(1)
    debounced(2)
    scheduler.advance(0.5)
    debounced(3)
    scheduler.advance(1.5)
    assert seen == [1]

    debounced(4)
    assert seen == [1, 4]


def test_flush_runs_pending_call_now(scheduler):
    limiter = RateLimiter(scheduler)
    seen: list[str] = []
    debounced = limiter.debounce(seen.append, 5.0)
    debounced("x")
    debounced.flush()
    assert seen == ["x"]
    scheduler.advance(10)
    assert seen == ["x"]


def test_newer_batch_supersedes_pending_one(scheduler):
    limiter = RateLimiter(scheduler, batch_delay=0.010)
    seen: list[str] = []

    limiter.batch("scores", lambda: seen.append("first"))
    limiter.batch("scores", lambda: seen.append("second"))
    limiter.batch("other", lambda: seen.append("other"))
    assert limiter.has_pending("scores")

    scheduler.advance(0.010)
    assert sorted(seen) == ["other", "second"]
    assert not limiter.has_pending("scores")


def test_throttle_drops_calls_inside_interval(scheduler):
    limiter = RateLimiter(scheduler, throttle_interval=0.008)
    seen: list[int] = []
    throttled = limiter.throttle(seen.append)

    throttled(1)
    scheduler.advance(0.004)
    throttled(2)
    scheduler.advance(0.005)
    throttled(3)

    assert seen == [1, 3]
    assert throttled.dropped == 1


def test_cancel_all_clears_timers(scheduler):
    limiter = RateLimiter(scheduler)
    seen: list[str] = []
    debounced = limiter.debounce(seen.append, 0.5)
    debounced("late")
    limiter.batch("k", lambda: seen.append("batch"))

    limiter.cancel_all()
    scheduler.advance(5)

    assert seen == []
    assert scheduler.active == 0
