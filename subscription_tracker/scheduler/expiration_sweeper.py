"""
Periodic deactivation of lapsed subscriptions.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional

import structlog

from subscription_tracker.services.health_monitor import HealthMonitor
from subscription_tracker.services.subscription_ledger import SubscriptionLedger


logger = structlog.get_logger(__name__)


class ExpirationSweeper:
    """
    Runs the expiration sweep on a fixed interval, first run at start.

    A failed sweep is logged and waits for the next tick; it is never retried
    in a tight loop. Each successful sweep signals the heartbeat.
    """

    def __init__(
        self,
        ledger: SubscriptionLedger,
        health_monitor: Optional[HealthMonitor] = None,
        interval_seconds: int = 3600,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.ledger = ledger
        self.health_monitor = health_monitor
        self.interval_seconds = interval_seconds
        self._sleep = sleep

        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None
        self.running = False
        self._task: Optional[asyncio.Task] = None

        self.logger = logger.bind(service="expiration_sweeper")

    async def sweep_once(self) -> List[str]:
        """Deactivate lapsed subscriptions and signal the heartbeat."""
        usernames = await self.ledger.deactivate_expired()
        self.last_run = datetime.utcnow()
        self.run_count += 1
        if self.health_monitor is not None:
            self.health_monitor.notify_heartbeat()
        return usernames

    async def _tick(self) -> None:
        try:
            await self.sweep_once()
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            self.logger.error(
                "Error checking expired subscriptions",
                error=str(e),
                error_count=self.error_count
            )

    async def _loop(self) -> None:
        while self.running:
            await self._tick()
            self.next_run = datetime.utcnow() + timedelta(seconds=self.interval_seconds)
            await self._sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self.running = True
        self._task = asyncio.create_task(self._loop(), name="expiration-sweeper")
        self.logger.info("Expiration sweeper started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        self.logger.info("Expiration sweeper stopped")

    def get_status(self) -> dict:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_error": self.last_error,
        }
