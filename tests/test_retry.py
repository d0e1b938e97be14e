"""Unit tests for the retry combinator and the rate gate."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from src.kaspi_amo.core.rate_gate import RateGate
from src.kaspi_amo.core.retry import (
    is_retryable_error,
    retry_after_seconds,
    with_retry,
)
from src.kaspi_amo.errors import CRMAPIError, OrderValidationError


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/orders")
    response = httpx.Response(status, request=request, headers=headers)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


class TestRetryPredicate:
    """Test transient vs permanent classification."""

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert is_retryable_error(_status_error(status)) is True

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_fail_fast(self, status):
        assert is_retryable_error(_status_error(status)) is False

    def test_network_errors_are_retryable(self):
        request = httpx.Request("GET", "https://api.test")
        assert is_retryable_error(httpx.ConnectError("refused", request=request))
        assert is_retryable_error(httpx.ReadTimeout("slow", request=request))

    def test_domain_errors(self):
        assert is_retryable_error(CRMAPIError("busy", status_code=503))
        assert not is_retryable_error(CRMAPIError("bad", status_code=400))
        assert not is_retryable_error(OrderValidationError("no phone"))
        assert not is_retryable_error(ValueError("boom"))

    def test_retry_after_header(self):
        assert retry_after_seconds(_status_error(429, {"Retry-After": "3"})) == 3.0
        assert retry_after_seconds(_status_error(429)) is None
        assert retry_after_seconds(ValueError()) is None


class TestWithRetry:
    """Test attempt ceilings."""

    async def test_transient_failures_retried_until_success(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise _status_error(503)
            return "ok"

        assert await with_retry(3, initial_delay=0)(flaky)() == "ok"
        assert calls == 3

    async def test_gives_up_after_max_attempts(self):
        calls = 0

        async def always_down():
            nonlocal calls
            calls += 1
            raise _status_error(502)

        with pytest.raises(httpx.HTTPStatusError):
            await with_retry(2, initial_delay=0)(always_down)()
        assert calls == 2

    async def test_permanent_error_not_retried(self):
        calls = 0

        async def bad_request():
            nonlocal calls
            calls += 1
            raise _status_error(400)

        with pytest.raises(httpx.HTTPStatusError):
            await with_retry(3, initial_delay=0)(bad_request)()
        assert calls == 1


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class TestRateGate:
    """Test minimum-interval pacing."""

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            RateGate(0)

    async def test_first_call_is_immediate(self):
        clock = FakeClock()
        gate = RateGate(5, clock=clock, sleep=clock.sleep)
        await gate.wait()
        assert clock.sleeps == []

    async def test_calls_spaced_by_min_interval(self):
        clock = FakeClock()
        gate = RateGate(5, clock=clock, sleep=clock.sleep)
        for _ in range(3):
            await gate.wait()
        assert clock.sleeps == [pytest.approx(0.2), pytest.approx(0.2)]

    async def test_no_wait_after_idle_period(self):
        clock = FakeClock()
        gate = RateGate(5, clock=clock, sleep=clock.sleep)
        await gate.wait()
        clock.now += 10
        await gate.wait()
        assert clock.sleeps == []

    async def test_concurrent_waiters_served_in_arrival_order(self):
        clock = FakeClock()
        gate = RateGate(7, clock=clock, sleep=clock.sleep)
        served: list[int] = []

        async def caller(n: int) -> None:
            await gate.wait()
            served.append(n)

        await asyncio.gather(*(caller(n) for n in range(4)))
        assert served == [0, 1, 2, 3]
        assert len(clock.sleeps) == 3
        assert gate.queue_size == 0
