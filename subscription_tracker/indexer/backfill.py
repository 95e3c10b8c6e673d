"""
Historical backfill of subscription payments missed while offline.
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from subscription_tracker.core.config import Settings, settings as default_settings
from subscription_tracker.core.resilience import CircuitBreaker, RetryExecutor
from subscription_tracker.indexer.core.types import BackfillStats
from subscription_tracker.indexer.monitoring.transfer_processor import TransferProcessor
from subscription_tracker.services.hive_client import HiveClient
from subscription_tracker.services.operation_parser import AccountOperation


logger = structlog.get_logger(__name__)


class HistoricalBackfill:
    """
    Scans the recent history of each monitored account once.

    Pages backwards from the newest entry until the window start is passed,
    then replays the window oldest first through the transfer processor. Page
    reads go through a circuit breaker wrapping a retry executor. A failure
    on one operation is counted and logged; the scan goes on. An account
    whose history cannot be read is skipped and reported in
    ``failed_accounts``.
    """

    def __init__(
        self,
        client: HiveClient,
        processor: TransferProcessor,
        accounts: List[str],
        page_size: int = 1000,
        clock: Callable[[], datetime] = datetime.utcnow,
        config: Settings = default_settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self.client = client
        self.processor = processor
        self.accounts = list(accounts)
        self.page_size = page_size
        self._clock = clock
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="hive-history",
            failure_threshold=config.hive_breaker_failure_threshold,
            reset_timeout=config.hive_breaker_reset_timeout,
        )
        self.retry = retry or RetryExecutor(
            name="hive-history",
            max_attempts=config.hive_retry_max_attempts,
            initial_delay=config.hive_retry_delay,
            backoff_factor=config.hive_retry_backoff_factor,
        )
        self.logger = logger.bind(service="historical_backfill")

    async def run(self, days: int = 31) -> BackfillStats:
        window_start = self._clock() - timedelta(days=days)
        stats = BackfillStats()

        self.logger.info(
            "Starting search for transactions",
            accounts=self.accounts,
            window_start=window_start.isoformat(),
            days=days
        )

        for account in self.accounts:
            try:
                operations = await self.fetch_window(account, window_start)
            except Exception as e:
                stats.failed_accounts.append(account)
                self.logger.error("Failed to fetch account history", account=account, error=str(e))
                continue
            self.logger.info("Fetched operations", account=account, count=len(operations))

            for operation in operations:
                stats.scanned += 1
                try:
                    outcome = await self.processor.process_operation(operation, use_block_time=True)
                except Exception as e:
                    stats.failed += 1
                    self.logger.error(
                        "Failed to process historical operation",
                        account=account,
                        index=operation.index,
                        error=str(e)
                    )
                    continue

                if outcome is not None:
                    stats.matched += 1
                    if outcome.changed:
                        stats.granted += 1

        self.logger.info(
            "Search completed",
            scanned=stats.scanned,
            matched=stats.matched,
            granted=stats.granted,
            failed=stats.failed,
            failed_accounts=stats.failed_accounts
        )
        return stats

    async def fetch_window(self, account: str, window_start: datetime) -> List[AccountOperation]:
        """All operations of ``account`` at or after ``window_start``, oldest first."""
        collected: List[AccountOperation] = []
        start: Optional[int] = -1

        while start is not None:
            # The node rejects pages reaching below index 0
            limit = self.page_size if start < 0 else min(self.page_size, start)
            page = await self._fetch_page(account, start, limit)
            if not page:
                break

            collected.extend(op for op in page if op.timestamp >= window_start)

            oldest = page[0]
            if oldest.timestamp < window_start or oldest.index <= 0:
                start = None
            else:
                start = oldest.index - 1

        collected.sort(key=lambda op: op.index)
        return collected

    async def _fetch_page(self, account: str, start: int, limit: int) -> List[AccountOperation]:
        async def read() -> List[AccountOperation]:
            return await self.client.get_account_history(account, start, limit)

        return await self.circuit_breaker.execute(lambda: self.retry.execute(read))
