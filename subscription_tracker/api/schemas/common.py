"""
Pydantic schemas for the health and status endpoints.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    last_check: Optional[str] = None
    db_status: str = "connected"
    hive_status: str = "connected"
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class UnhealthyResponse(BaseModel):
    """Returned with 503 when a dependency is down."""
    status: str = "unhealthy"
    error: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class BreakerStatus(BaseModel):
    """Circuit breaker view of one dependency."""
    connected: bool
    failures: int
    last_failure: Optional[str] = None


class DatabaseStatus(BreakerStatus):
    statistics: Dict[str, int] = Field(default_factory=dict)


class HiveStatus(BreakerStatus):
    reconnect_attempts: int = 0
    phase: str = "disconnected"


class StatusResponse(BaseModel):
    """Detailed service status."""
    uptime: float
    last_check: str
    database: DatabaseStatus
    hive: HiveStatus
    sweeper: Dict[str, Any] = Field(default_factory=dict)
    processing: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
