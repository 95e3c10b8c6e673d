"""
Core types for operation monitoring.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ConnectionPhase(Enum):
    """Phase of the upstream connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ServiceStatus(Enum):
    """Status of the tracker service."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ProcessingStats:
    """Statistics for operation processing."""
    operations_seen: int = 0
    transfers_matched: int = 0
    subscriptions_granted: int = 0
    grants_skipped: int = 0
    errors: int = 0
    last_processed_index: Optional[int] = None
    start_time: Optional[datetime] = None


@dataclass
class BackfillStats:
    """Result of a historical scan."""
    scanned: int = 0
    matched: int = 0
    granted: int = 0
    failed: int = 0
    failed_accounts: List[str] = field(default_factory=list)
