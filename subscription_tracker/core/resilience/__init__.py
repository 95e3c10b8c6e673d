"""
Fault isolation for calls to the Hive network and the database.
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerState
from .retry import RetryExecutor

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "RetryExecutor",
]
