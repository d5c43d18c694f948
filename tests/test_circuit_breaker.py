"""Tests for the async circuit breaker (circuit_breaker.py)."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from miner_watch.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    get_all_statuses,
    register,
)


async def _ok():
    return "ok"


async def _boom():
    raise RuntimeError("boom")


async def _fail(cb: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await cb.call(_boom)


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_passes_through_when_closed(self):
        cb = CircuitBreaker("t", failure_threshold=2)
        assert await cb.call(_ok) == "ok"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        cb = CircuitBreaker("t", failure_threshold=3, recovery_timeout=60)
        await _fail(cb, 3)
        assert cb.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.call(_ok)
        assert exc_info.value.circuit_name == "t"
        assert 0 < exc_info.value.retry_in <= 60
        assert cb.stats.rejected_calls == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self):
        cb = CircuitBreaker("t", failure_threshold=3)
        await _fail(cb, 2)
        await cb.call(_ok)
        await _fail(cb, 2)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_calls_close(self):
        cb = CircuitBreaker("t", failure_threshold=1, recovery_timeout=10, success_threshold=2)
        with patch("miner_watch.circuit_breaker.time.monotonic", return_value=100.0):
            await _fail(cb, 1)
        assert cb.state == CircuitState.OPEN
        with patch("miner_watch.circuit_breaker.time.monotonic", return_value=111.0):
            await cb.call(_ok)
            assert cb.state == CircuitState.HALF_OPEN
            await cb.call(_ok)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        cb = CircuitBreaker("t", failure_threshold=1, recovery_timeout=10)
        with patch("miner_watch.circuit_breaker.time.monotonic", return_value=100.0):
            await _fail(cb, 1)
        with patch("miner_watch.circuit_breaker.time.monotonic", return_value=111.0):
            await _fail(cb, 1)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_errors_outside_trip_on_ignored(self):
        cb = CircuitBreaker("t", failure_threshold=1, trip_on=(ValueError,))
        await _fail(cb, 3)
        assert cb.state == CircuitState.CLOSED
        assert cb.stats.failed_calls == 0

        async def _bad_value():
            raise ValueError("malformed")

        with pytest.raises(ValueError):
            await cb.call(_bad_value)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_retry_in_counts_down(self):
        cb = CircuitBreaker("t", failure_threshold=1, recovery_timeout=10)
        assert cb.retry_in() == 0.0
        with patch("miner_watch.circuit_breaker.time.monotonic", return_value=100.0):
            await _fail(cb, 1)
        with patch("miner_watch.circuit_breaker.time.monotonic", return_value=104.0):
            assert cb.retry_in() == 6.0
            assert cb.status()["retry_in_s"] == 6.0

    @pytest.mark.asyncio
    async def test_status_and_registry(self):
        cb = register(CircuitBreaker("test:registry", failure_threshold=5))
        await _fail(cb, 1)
        await cb.call(_ok)

        status = get_all_statuses()["test:registry"]

        assert status["state"] == "closed"
        assert status["total_calls"] == 2
        assert status["failed_calls"] == 1
        assert status["failure_rate"] == 0.5
