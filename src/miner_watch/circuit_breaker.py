"""
Async circuit breaker guarding the per-chain transfer index endpoints.

While Alchemy is rate-limiting or down, every trace node would otherwise
burn its full retry budget before being absorbed as a negative result.
The breaker fails those calls fast instead.

Only exceptions listed in ``trip_on`` count against the endpoint; anything
else (a bad argument, a parsing bug) passes through without moving the
state machine.

States
------
CLOSED    : calls pass through; consecutive endpoint failures are counted.
OPEN      : calls are rejected with ``CircuitOpenError`` until
            ``recovery_timeout`` has elapsed.
HALF_OPEN : trial calls are let through; ``success_threshold`` successes
            close the circuit, one failure re-opens it.

Usage
-----
    cb = register(CircuitBreaker("alchemy:base", trip_on=(IndexProviderError,)))
    result = await cb.call(do_request)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling through an open circuit."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"circuit '{name}' open, next attempt in {retry_in:.0f}s")
        self.circuit_name = name
        self.retry_in = retry_in


@dataclass
class CircuitBreakerStats:
    total_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failed_calls / self.total_calls if self.total_calls else 0.0


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 2,
        trip_on: tuple[type[BaseException], ...] = (Exception,),
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.trip_on = trip_on
        self.stats = CircuitBreakerStats()

        self._state = CircuitState.CLOSED
        self._streak = 0  # consecutive failures, or trial successes while HALF_OPEN
        self._opened_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def retry_in(self) -> float:
        """Seconds until an OPEN circuit lets a trial call through."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout - time.monotonic())

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        async with self._lock:
            if self._state == CircuitState.OPEN and self.retry_in() == 0.0:
                self._move_to(CircuitState.HALF_OPEN, streak=0)
            wait = self.retry_in()

        if self._state == CircuitState.OPEN:
            self.stats.rejected_calls += 1
            raise CircuitOpenError(self.name, wait)

        self.stats.total_calls += 1
        try:
            result = await func(*args, **kwargs)
        except self.trip_on:
            await self._failed()
            raise
        await self._succeeded()
        return result

    async def _succeeded(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._streak += 1
                if self._streak >= self.success_threshold:
                    self._move_to(CircuitState.CLOSED, streak=0)
            else:
                self._streak = 0

    async def _failed(self) -> None:
        async with self._lock:
            self.stats.failed_calls += 1
            if self._state == CircuitState.HALF_OPEN:
                self._trip()
                return
            self._streak += 1
            if self._streak >= self.failure_threshold:
                self._trip()

    def _trip(self) -> None:
        self._opened_at = time.monotonic()
        self._move_to(CircuitState.OPEN, streak=0)

    def _move_to(self, new_state: CircuitState, *, streak: int) -> None:
        logger.warning(
            "CircuitBreaker '%s': %s → %s (failed calls so far=%d)",
            self.name,
            self._state.value,
            new_state.value,
            self.stats.failed_calls,
        )
        self._state = new_state
        self._streak = streak

    def status(self) -> dict[str, Any]:
        """Serialisable snapshot for ``/health``."""
        return {
            "state": self._state.value,
            "total_calls": self.stats.total_calls,
            "failed_calls": self.stats.failed_calls,
            "rejected_calls": self.stats.rejected_calls,
            "failure_rate": round(self.stats.failure_rate, 3),
            "retry_in_s": round(self.retry_in(), 1),
        }


# ---------------------------------------------------------------------------
# Registry – every breaker is listed on the health endpoint
# ---------------------------------------------------------------------------
_registry: dict[str, CircuitBreaker] = {}


def register(cb: CircuitBreaker) -> CircuitBreaker:
    _registry[cb.name] = cb
    return cb


def get_all_statuses() -> dict[str, dict[str, Any]]:
    return {name: cb.status() for name, cb in _registry.items()}
