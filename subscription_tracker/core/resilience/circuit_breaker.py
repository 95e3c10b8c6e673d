"""
Circuit breaker guarding calls to an external dependency.

States:
- CLOSED: calls pass through, failures are counted
- OPEN: calls are rejected without running until reset_timeout elapses

There is no separate half-open state: the first call after the cooldown
resets the breaker and runs optimistically. If that call fails the breaker
reopens immediately and the cooldown starts over.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from subscription_tracker.core.exceptions import CircuitOpenError


logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CircuitBreakerState:
    """Snapshot of a breaker for status reporting."""
    is_open: bool
    failure_count: int
    last_failure_time: Optional[float]

    def to_dict(self) -> dict:
        last_failure = None
        if self.last_failure_time is not None:
            last_failure = datetime.fromtimestamp(
                self.last_failure_time, tz=timezone.utc
            ).isoformat()
        return {
            "is_open": self.is_open,
            "failure_count": self.failure_count,
            "last_failure_time": last_failure,
        }


class CircuitBreaker:
    """Failure-count circuit breaker, one instance per dependency."""

    def __init__(
        self,
        name: str = "unnamed",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self.failure_count = 0
        self.is_open = False
        self.last_failure_time: Optional[float] = None
        self._probing = False

        self.logger = logger.bind(service="circuit_breaker", breaker=name)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.is_open:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed >= self.reset_timeout:
                self.logger.info("Circuit cooldown elapsed, allowing call", elapsed=elapsed)
                self.reset()
                self._probing = True
            else:
                raise CircuitOpenError(self.name, retry_after=self.reset_timeout - elapsed)

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        self.failure_count = 0
        self.is_open = False
        self._probing = False

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()

        trip = self._probing or self.failure_count >= self.failure_threshold
        self._probing = False
        if trip and not self.is_open:
            self.is_open = True
            self.logger.warning(
                "Circuit opened",
                failure_count=self.failure_count,
                reset_timeout=self.reset_timeout
            )

    def reset(self) -> None:
        self.failure_count = 0
        self.is_open = False
        self.last_failure_time = None

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            is_open=self.is_open,
            failure_count=self.failure_count,
            last_failure_time=self.last_failure_time,
        )
