"""
Core types for operation monitoring.
"""

from .types import BackfillStats, ConnectionPhase, ProcessingStats, ServiceStatus

__all__ = [
    "BackfillStats",
    "ConnectionPhase",
    "ProcessingStats",
    "ServiceStatus",
]
