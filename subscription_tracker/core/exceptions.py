"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class SubscriptionTrackerException(Exception):
    """Base exception class for the subscription tracker."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(SubscriptionTrackerException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(SubscriptionTrackerException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class ValidationError(SubscriptionTrackerException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class TransientUpstreamError(SubscriptionTrackerException):
    """Raised when the Hive API node fails in a way worth retrying."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSIENT_UPSTREAM_ERROR", details)


# Resilience exceptions
class CircuitOpenError(SubscriptionTrackerException):
    """Raised when a call is rejected by an open circuit breaker."""

    def __init__(self, name: str, retry_after: Optional[float] = None):
        super().__init__(
            f"Circuit breaker is open for {name}",
            "CIRCUIT_OPEN",
            {"breaker": name, "retry_after": retry_after}
        )
        self.name = name


class RetryExhaustedError(SubscriptionTrackerException):
    """Raised when every retry attempt of an operation failed."""

    def __init__(self, name: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{name} operation failed after {attempts} attempts: {last_error}",
            "RETRY_EXHAUSTED",
            {"operation": name, "attempts": attempts, "last_error": str(last_error)}
        )
        self.attempts = attempts
        self.last_error = last_error


class HealthServerError(SubscriptionTrackerException):
    """Raised when the health check server cannot start, e.g. the port is taken."""

    def __init__(self, host: str, port: int):
        super().__init__(
            f"Health check server could not start on {host}:{port}",
            "HEALTH_SERVER_ERROR",
            {"host": host, "port": port}
        )


class ReconnectionExhaustedError(SubscriptionTrackerException):
    """Raised when the supervisor gives up reconnecting to the Hive network."""

    def __init__(self, attempts: int, last_error: Optional[str] = None):
        super().__init__(
            "Failed to maintain Hive connection",
            "RECONNECTION_EXHAUSTED",
            {"attempts": attempts, "last_error": last_error}
        )
        self.attempts = attempts


# Processing outcomes
class ClassificationMismatch(SubscriptionTrackerException):
    """An operation is not a qualifying subscription payment."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason, "CLASSIFICATION_MISMATCH", details)
        self.reason = reason


class PersistenceConflictError(DatabaseError):
    """A concurrent grant for the same username committed first."""

    def __init__(self, username: str):
        super().__init__(
            f"Concurrent update for subscription: {username}",
            {"username": username}
        )
        self.username = username
