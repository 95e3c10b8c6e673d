"""
Retry executor with deterministic exponential backoff.
"""

import asyncio
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from subscription_tracker.core.exceptions import CircuitOpenError, RetryExhaustedError


logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """
    Runs an async operation up to ``max_attempts`` times.

    The wait before attempt k+1 is ``initial_delay * backoff_factor ** (k - 1)``.
    The last failure is not followed by a wait: it surfaces immediately as
    RetryExhaustedError. No jitter is applied.
    """

    def __init__(
        self,
        name: str = "unnamed",
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        backoff_factor: float = 2.0,
        non_retryable: Tuple[Type[BaseException], ...] = (CircuitOpenError,),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if backoff_factor <= 1:
            raise ValueError("backoff_factor must be greater than 1")

        self.name = name
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.non_retryable = non_retryable
        self._sleep = sleep
        self.logger = logger.bind(service="retry", operation=name)

    def delay_for(self, attempt: int) -> float:
        """Wait applied after the given failed attempt (1-based)."""
        return self.initial_delay * (self.backoff_factor ** (attempt - 1))

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await operation()
            except self.non_retryable:
                raise
            except Exception as e:
                if attempt >= self.max_attempts:
                    self.logger.error(
                        f"{self.name} operation failed after {attempt} attempts",
                        attempt=attempt,
                        error=str(e),
                        error_type=type(e).__name__
                    )
                    raise RetryExhaustedError(self.name, attempt, e) from e

                wait_time = self.delay_for(attempt)
                self.logger.warning(
                    f"{self.name} operation failed, retrying",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    wait_time=wait_time,
                    error=str(e)
                )
                await self._sleep(wait_time)
                attempt += 1
