"""
Main entry point for the subscription tracker service.

The composition root builds every component once and passes references
explicitly: database, ledger, classifier/processor, connection supervisor,
expiration sweeper and the health server.
"""

import asyncio
import signal
import sys
from datetime import datetime
from typing import Callable, Optional

import structlog

from subscription_tracker.api.context import ServiceContext
from subscription_tracker.api.main import HealthServer, create_server
from subscription_tracker.core.config import Settings, settings as default_settings
from subscription_tracker.core.database import Database
from subscription_tracker.core.exceptions import HealthServerError, ReconnectionExhaustedError
from subscription_tracker.core.logging import setup_logging
from subscription_tracker.core.resilience import RetryExecutor
from subscription_tracker.indexer.backfill import HistoricalBackfill
from subscription_tracker.indexer.core.types import BackfillStats, ProcessingStats, ServiceStatus
from subscription_tracker.indexer.monitoring.connection_supervisor import ConnectionSupervisor
from subscription_tracker.indexer.monitoring.transfer_processor import (
    TransferClassifier,
    TransferProcessor,
)
from subscription_tracker.scheduler.expiration_sweeper import ExpirationSweeper
from subscription_tracker.services.health_monitor import HealthMonitor
from subscription_tracker.services.hive_client import HiveClient
from subscription_tracker.services.subscription_ledger import SubscriptionLedger


logger = structlog.get_logger(__name__)


class TrackerMain:
    """Subscription tracker service coordinator."""

    def __init__(
        self,
        config: Settings = default_settings,
        database: Optional[Database] = None,
        client_factory: Optional[Callable[[], HiveClient]] = None,
    ):
        self.config = config
        self.client_factory = client_factory or (lambda: HiveClient(config))
        self.status = ServiceStatus.STOPPED

        self.database = database or Database(config=config)
        self.health_monitor = HealthMonitor(stale_after=config.health_stale_after)
        self.ledger = SubscriptionLedger(self.database)

        self.accounts = config.get_monitored_accounts()
        self.processor = TransferProcessor(
            classifier=TransferClassifier(config.get_products()),
            ledger=self.ledger,
            retry=RetryExecutor(
                name="transfer-processing",
                max_attempts=config.processing_retry_max_attempts,
                initial_delay=config.processing_retry_delay,
                backoff_factor=config.processing_retry_backoff_factor,
            ),
            stats=ProcessingStats(start_time=datetime.utcnow()),
        )
        self.supervisor = ConnectionSupervisor(
            accounts=self.accounts,
            handler=self.processor.process_operation,
            client_factory=self.client_factory,
            config=config,
        )
        self.sweeper = ExpirationSweeper(
            ledger=self.ledger,
            health_monitor=self.health_monitor,
            interval_seconds=config.sweep_interval,
        )

        self.context = ServiceContext(
            config=config,
            database=self.database,
            ledger=self.ledger,
            health_monitor=self.health_monitor,
            supervisor=self.supervisor,
            sweeper=self.sweeper,
            processor=self.processor,
        )
        self.health_server: Optional[HealthServer] = None
        self._health_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        logger.info(
            "Initializing subscription tracker",
            version=self.config.app_version,
            accounts=self.accounts,
            products=[p.name for p in self.config.get_products()]
        )
        await self.database.init()

    async def run_backfill(self, days: Optional[int] = None) -> Optional[BackfillStats]:
        """Catch up on payments made while the service was offline."""
        try:
            async with self.client_factory() as client:
                backfill = HistoricalBackfill(
                    client=client,
                    processor=self.processor,
                    accounts=self.accounts,
                    page_size=self.config.hive_history_batch_size,
                    config=self.config,
                )
                return await backfill.run(days=days or self.config.backfill_days)
        except Exception as e:
            logger.warning("Backfill failed, starting from current head", error=str(e))
            return None

    async def start(self) -> None:
        """
        Start every component and monitor until stopped.

        Raises:
            ReconnectionExhaustedError: when the Hive connection cannot be restored
        """
        self.status = ServiceStatus.STARTING

        if self.config.health_check_enabled:
            self.health_server = create_server(self.context)
            self._health_task = asyncio.create_task(self._serve_health(), name="health-server")
            logger.info("Health check server starting", port=self.config.health_check_port)

        if self.config.backfill_enabled:
            await self.run_backfill()

        self.sweeper.start()

        self.status = ServiceStatus.RUNNING
        try:
            await self.supervisor.run()
        except ReconnectionExhaustedError:
            self.status = ServiceStatus.ERROR
            raise

    async def stop(self) -> None:
        """Stop components in order; a failing step does not abort the rest."""
        if self.status == ServiceStatus.STOPPED:
            return
        logger.info("Shutting down gracefully")
        self.status = ServiceStatus.STOPPING

        try:
            await self.supervisor.stop()
        except Exception as e:
            logger.error("Error stopping Hive monitor", error=str(e))

        try:
            await self.sweeper.stop()
        except Exception as e:
            logger.error("Error stopping expiration sweeper", error=str(e))

        try:
            await self._stop_health_server()
        except Exception as e:
            logger.error("Error closing health check server", error=str(e))

        try:
            await self.database.close()
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))

        self.status = ServiceStatus.STOPPED
        logger.info("Cleanup completed")

    async def _serve_health(self) -> None:
        """Run the health server; a failed start leaves the service running without it."""
        try:
            await self.health_server.serve()
        except HealthServerError as e:
            logger.error("Health check server failed to start", error=e.message, **e.details)

    async def _stop_health_server(self) -> None:
        if self.health_server is None or self._health_task is None:
            return
        self.health_server.should_exit = True
        await asyncio.gather(self._health_task, return_exceptions=True)
        self._health_task = None
        logger.info("Health check server stopped")


async def main() -> int:
    """Run the service until a signal or a fatal error; returns the exit code."""
    setup_logging()

    tracker = TrackerMain()
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_requested.set)

    exit_code = 0
    run_task: Optional[asyncio.Task] = None
    try:
        await tracker.initialize()
        run_task = asyncio.create_task(tracker.start(), name="tracker")
        stop_task = asyncio.create_task(stop_requested.wait(), name="stop-signal")

        done, _ = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()
        if run_task in done:
            run_task.result()
        else:
            logger.info("Received shutdown signal")
    except ReconnectionExhaustedError as e:
        logger.critical("Hive connection lost for good, exiting", error=e.message, **e.details)
        exit_code = 1
    except Exception as e:
        logger.error("Subscription tracker failed", error=str(e), error_type=type(e).__name__)
        exit_code = 1
    finally:
        if run_task is not None and not run_task.done():
            run_task.cancel()
            await asyncio.gather(run_task, return_exceptions=True)
        await tracker.stop()

    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
