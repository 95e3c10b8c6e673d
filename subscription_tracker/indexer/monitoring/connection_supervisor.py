"""
Connection supervisor for the Hive operation streams.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from subscription_tracker.core.config import Settings, settings as default_settings
from subscription_tracker.core.exceptions import ReconnectionExhaustedError
from subscription_tracker.core.resilience import CircuitBreaker, RetryExecutor
from subscription_tracker.indexer.core.types import ConnectionPhase
from subscription_tracker.services.hive_client import HiveClient
from subscription_tracker.services.operation_parser import AccountOperation


logger = structlog.get_logger(__name__)

OperationHandler = Callable[[AccountOperation], Awaitable[Any]]


class ConnectionSupervisor:
    """
    Owns the lifecycle of the upstream connection.

    One reader task per monitored account pushes operations into a shared
    queue; a single consumer hands them to the handler one at a time, in
    delivery order. Client error/disconnect notifications and stream
    failures all raise one disconnect signal that the supervision loop turns
    into a reconnect.
    """

    def __init__(
        self,
        accounts: List[str],
        handler: OperationHandler,
        client_factory: Callable[[], HiveClient] = HiveClient,
        config: Settings = default_settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry: Optional[RetryExecutor] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if not accounts:
            raise ValueError("At least one account must be monitored")

        self.accounts = list(accounts)
        self.handler = handler
        self.client_factory = client_factory
        self.max_reconnect_attempts = config.max_reconnect_attempts
        self.reconnect_delay = config.reconnect_delay
        self._sleep = sleep

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="hive-connection",
            failure_threshold=config.hive_breaker_failure_threshold,
            reset_timeout=config.hive_breaker_reset_timeout,
        )
        self.retry = retry or RetryExecutor(
            name="hive-connection",
            max_attempts=config.hive_retry_max_attempts,
            initial_delay=config.hive_retry_delay,
            backoff_factor=config.hive_retry_backoff_factor,
            sleep=sleep,
        )

        self.client: Optional[HiveClient] = None
        self.phase = ConnectionPhase.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_error: Optional[str] = None
        self.last_seen_index: Dict[str, int] = {}

        self._queue: "asyncio.Queue[AccountOperation]" = asyncio.Queue()
        self._readers: Dict[str, asyncio.Task] = {}
        self._consumer: Optional[asyncio.Task] = None
        self._disconnected = asyncio.Event()
        self._stopping = False

        self.logger = logger.bind(service="connection_supervisor")

    @property
    def is_connected(self) -> bool:
        return self.phase == ConnectionPhase.CONNECTED

    async def connect(self) -> None:
        """Establish the upstream connection; no-op when connected."""
        if self.is_connected:
            return

        self.phase = ConnectionPhase.CONNECTING

        async def attempt() -> HiveClient:
            await self._discard_client()
            client = self.client_factory()
            client.on("error", self._on_client_error)
            client.on("disconnect", self._on_client_disconnect)
            self.client = client
            await client.start()
            return client

        try:
            await self.circuit_breaker.execute(lambda: self.retry.execute(attempt))
        except Exception as e:
            self.phase = ConnectionPhase.DISCONNECTED
            self.last_error = str(e)
            await self._discard_client()
            raise

        self.phase = ConnectionPhase.CONNECTED
        self.reconnect_attempts = 0
        self._disconnected.clear()
        self.logger.info("Successfully connected to Hive network", accounts=self.accounts)

    async def start_monitoring(self) -> None:
        """Connect if needed and open one subscription per account."""
        self._stopping = False
        if not self.is_connected or self.client is None:
            await self.connect()

        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="hive-consumer")
        self._subscribe_all()
        self.logger.info("Real-time monitoring started", accounts=self.accounts)

    def _subscribe_all(self) -> None:
        for account in self.accounts:
            reader = self._readers.get(account)
            if reader is not None and not reader.done():
                continue
            self._readers[account] = asyncio.create_task(
                self._read_stream(account),
                name=f"hive-stream-{account}"
            )

    async def _read_stream(self, account: str) -> None:
        stream = self.client.observe(account, start_after=self.last_seen_index.get(account))
        try:
            async for operation in stream:
                self._remember(account, operation.index)
                await self._queue.put(operation)
            self.logger.info("Observer completed", account=account)
            self._signal_disconnect(f"stream for {account} completed")
        except asyncio.CancelledError:
            stream.close()
            raise
        except Exception as e:
            self.logger.error("Observer error", account=account, error=str(e))
            self._signal_disconnect(str(e))
        finally:
            if stream.position is not None:
                self._remember(account, stream.position)

    async def _consume(self) -> None:
        while True:
            operation = await self._queue.get()
            try:
                await self.handler(operation)
            except Exception as e:
                self.logger.error(
                    "Error processing operation",
                    index=operation.index,
                    transaction_id=operation.transaction_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
            finally:
                self._queue.task_done()

    def _remember(self, account: str, index: int) -> None:
        """Keep the newest known index so a new stream resumes after it."""
        previous = self.last_seen_index.get(account)
        if previous is None or index > previous:
            self.last_seen_index[account] = index

    def _on_client_error(self, error: Optional[BaseException]) -> None:
        self._signal_disconnect(f"client error: {error}")

    def _on_client_disconnect(self, error: Optional[BaseException]) -> None:
        self._signal_disconnect("client disconnected")

    def _signal_disconnect(self, reason: str) -> None:
        # Failures while connecting are handled by connect() itself
        if self._stopping or not self.is_connected or self._disconnected.is_set():
            return
        self.last_error = reason
        self.logger.warning("Hive connection lost", reason=reason)
        self._disconnected.set()

    async def run(self) -> None:
        """
        Monitor until stopped.

        Raises:
            ReconnectionExhaustedError: when the reconnect budget is spent
        """
        await self.start_monitoring()
        while not self._stopping:
            await self._disconnected.wait()
            if self._stopping:
                break
            await self.handle_disconnect()

    async def handle_disconnect(self) -> None:
        """Tear down the dead connection, then reconnect and re-subscribe."""
        self.phase = ConnectionPhase.DISCONNECTED
        await self._cancel_readers()
        await self._discard_client()

        while True:
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self.logger.error(
                    "Max reconnection attempts reached",
                    attempts=self.reconnect_attempts,
                    last_error=self.last_error
                )
                raise ReconnectionExhaustedError(self.reconnect_attempts, self.last_error)

            self.reconnect_attempts += 1
            self.logger.info(
                "Attempting to reconnect",
                attempt=self.reconnect_attempts,
                max_attempts=self.max_reconnect_attempts,
                delay=self.reconnect_delay
            )
            await self._sleep(self.reconnect_delay)

            try:
                await self.connect()
                break
            except Exception as e:
                self.logger.warning(
                    "Reconnect attempt failed",
                    attempt=self.reconnect_attempts,
                    error=str(e)
                )

        self._subscribe_all()

    async def _cancel_readers(self) -> None:
        readers = [t for t in self._readers.values() if not t.done()]
        for task in readers:
            task.cancel()
        if readers:
            await asyncio.gather(*readers, return_exceptions=True)
        self._readers.clear()

    async def _discard_client(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.stop()
        except Exception as e:
            self.logger.warning("Failed to close stale Hive client", error=str(e))

    async def stop(self) -> None:
        """Close subscriptions and the client; best-effort."""
        self._stopping = True
        self._disconnected.set()
        await self._cancel_readers()

        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            await asyncio.gather(self._consumer, return_exceptions=True)
        self._consumer = None

        await self._discard_client()
        self.phase = ConnectionPhase.DISCONNECTED
        self.logger.info("Hive monitor stopped successfully")

    def get_state(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "phase": self.phase.value,
            "reconnect_attempts": self.reconnect_attempts,
            "circuit_breaker_state": self.circuit_breaker.get_state().to_dict(),
            "last_error": self.last_error,
            "last_seen_index": dict(self.last_seen_index),
        }
