"""HTTP helpers: retried catalog calls behind a circuit breaker, single-shot enrichment calls."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, TypeVar

import httpx

from personalize.config import settings

T = TypeVar("T")


class CircuitBreakerOpenError(RuntimeError):
    """Raised when the circuit breaker is open and rejects a call."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name


class RetryableStatusError(httpx.HTTPError):
    """Marks a response whose status code is worth another attempt."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Retryable response: {response.status_code}")
        self.response = response


@dataclass
class _BreakerState:
    failures: int = 0
    state: str = "closed"  # closed, open, half-open
    trips: int = 0
    open_until: float = 0.0
    probe_in_flight: bool = False


class AsyncCircuitBreaker:
    """Opens after ``max_failures`` consecutive failures; backs off exponentially between trips."""

    def __init__(
        self,
        *,
        max_failures: int,
        base_delay: float,
        max_delay: float,
        name: str,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delay values must be non-negative")
        self._max_failures = max_failures
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._name = name
        self._clock = clock or time.monotonic
        self._state = _BreakerState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state.state

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        await self._acquire_permission()
        try:
            result = await func()
        except Exception:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _acquire_permission(self) -> None:
        async with self._lock:
            state = self._state
            if state.state == "open":
                if self._clock() < state.open_until:
                    raise CircuitBreakerOpenError(self._name)
                state.state = "half-open"
                state.probe_in_flight = False
            if state.state == "half-open":
                if state.probe_in_flight:
                    raise CircuitBreakerOpenError(self._name)
                state.probe_in_flight = True

    async def _record_failure(self) -> None:
        async with self._lock:
            if self._state.state == "half-open":
                self._trip()
                return
            self._state.failures += 1
            if self._state.failures >= self._max_failures:
                self._trip()

    async def _record_success(self) -> None:
        async with self._lock:
            self._state = _BreakerState()

    def _trip(self) -> None:
        state = self._state
        state.state = "open"
        state.failures = self._max_failures
        state.trips += 1
        delay = self._base_delay * (2 ** (state.trips - 1))
        if self._max_delay:
            delay = min(delay, self._max_delay)
        state.open_until = self._clock() + delay
        state.probe_in_flight = False

    async def reset(self) -> None:
        async with self._lock:
            self._state = _BreakerState()


def default_breaker(name: str) -> AsyncCircuitBreaker:
    return AsyncCircuitBreaker(
        max_failures=settings.HTTP_CIRCUIT_BREAKER_MAX_FAILURES,
        base_delay=settings.HTTP_CIRCUIT_BREAKER_BASE_DELAY,
        max_delay=settings.HTTP_CIRCUIT_BREAKER_MAX_DELAY,
        name=name,
    )


@asynccontextmanager
async def async_http_client(
    *,
    base_url: str | httpx.URL | None = None,
    timeout: float | None = None,
    additional_options: Optional[dict[str, Any]] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Create an AsyncClient with the configured timeouts and proxy."""

    if timeout is not None:
        client_timeout = httpx.Timeout(timeout)
    else:
        client_timeout = httpx.Timeout(
            timeout=settings.HTTP_TIMEOUT_TOTAL,
            connect=settings.HTTP_TIMEOUT_CONNECT,
            read=settings.HTTP_TIMEOUT_READ,
            write=settings.HTTP_TIMEOUT_WRITE,
        )
    options: dict[str, Any] = {"timeout": client_timeout}
    if base_url is not None:
        options["base_url"] = base_url
    if settings.HTTP_PROXY_URL:
        options["proxy"] = settings.HTTP_PROXY_URL
    if additional_options:
        options.update(additional_options)

    async with httpx.AsyncClient(**options) as client:
        yield client


async def request_with_retries(
    method: str,
    url: str,
    *,
    client: httpx.AsyncClient,
    circuit_breaker: AsyncCircuitBreaker,
    retries: int,
    backoff_factor: float,
    backoff_max: float,
    retry_statuses: Iterable[int] | None = None,
    **kwargs: Any,
) -> httpx.Response:
    """Execute an HTTP request retrying timeouts, network errors and ``retry_statuses``."""

    attempts = max(1, int(retries) + 1)
    delay = max(0.0, backoff_factor)
    retryable = set(retry_statuses or ())
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        async def _attempt() -> httpx.Response:
            response = await client.request(method, url, **kwargs)
            if response.status_code in retryable:
                raise RetryableStatusError(response)
            return response

        try:
            return await circuit_breaker.call(_attempt)
        except CircuitBreakerOpenError:
            raise
        except (RetryableStatusError, httpx.TimeoutException, httpx.NetworkError) as exc:
            last_error = exc

        if attempt >= attempts:
            break
        if delay > 0:
            await asyncio.sleep(delay)
            delay = delay * 2
            if backoff_max > 0:
                delay = min(delay, backoff_max)

    assert last_error is not None
    raise last_error


__all__ = [
    "AsyncCircuitBreaker",
    "CircuitBreakerOpenError",
    "RetryableStatusError",
    "async_http_client",
    "default_breaker",
    "request_with_retries",
]
