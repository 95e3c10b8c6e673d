"""
Liveness heartbeat shared by the sweeper and the health endpoints.
"""

import time
from datetime import datetime, timezone
from typing import Callable

import structlog


logger = structlog.get_logger(__name__)


class HealthMonitor:
    """Tracks when the periodic checks last succeeded."""

    def __init__(self, stale_after: float = 7200, clock: Callable[[], float] = time.time):
        self.stale_after = stale_after
        self._clock = clock
        self.started_at = clock()
        self.last_successful_check = self.started_at

    def notify_heartbeat(self) -> None:
        self.last_successful_check = self._clock()
        logger.debug("Health check timestamp updated")

    def seconds_since_heartbeat(self) -> float:
        return self._clock() - self.last_successful_check

    def is_stalled(self) -> bool:
        return self.seconds_since_heartbeat() > self.stale_after

    @property
    def uptime(self) -> float:
        return self._clock() - self.started_at

    def last_check_iso(self) -> str:
        return datetime.fromtimestamp(self.last_successful_check, tz=timezone.utc).isoformat()
