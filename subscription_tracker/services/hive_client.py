"""
Hive RPC client service for interacting with the Hive blockchain.
Provides account history reads and a polling stream of new operations.
"""

import asyncio
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import aiohttp
import structlog

from subscription_tracker.core.config import HiveConfig, Settings, settings as default_settings
from subscription_tracker.core.exceptions import TransientUpstreamError, ValidationError
from subscription_tracker.services.operation_parser import AccountOperation


logger = structlog.get_logger(__name__)

CLIENT_EVENTS = ("error", "disconnect")


class HiveClient:
    """
    Async Hive JSON-RPC client.

    Emits ``error`` when a request fails at the transport level and
    ``disconnect`` when the HTTP session is found closed while the client is
    running. Listeners are plain callables taking the error (or None).
    """

    def __init__(
        self,
        config: Settings = default_settings,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        rpc_config = HiveConfig.get_rpc_config(config)
        self.endpoint = rpc_config["endpoint"]
        self.timeout = rpc_config["timeout"]
        self.poll_interval = rpc_config["poll_interval"]
        self.batch_size = rpc_config["batch_size"]

        self._session = session
        self._owns_session = session is None
        self._request_id = 0
        self._listeners: Dict[str, List[Callable[[Optional[BaseException]], Any]]] = {
            name: [] for name in CLIENT_EVENTS
        }
        self.running = False
        self.head_block: Optional[int] = None
        self.logger = logger.bind(service="hive_client", endpoint=self.endpoint)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    def on(self, event: str, callback: Callable[[Optional[BaseException]], Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown client event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, error: Optional[BaseException] = None) -> None:
        for callback in self._listeners[event]:
            try:
                callback(error)
            except Exception as e:
                self.logger.warning("Client listener failed", client_event=event, error=str(e))

    async def start(self) -> None:
        """Open the HTTP session and verify the node answers."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True

        self.running = True
        try:
            props = await self.call("condenser_api.get_dynamic_global_properties", [])
        except Exception:
            self.running = False
            raise
        self.head_block = props.get("head_block_number")
        self.logger.info("Connected to Hive node", head_block=self.head_block)

    async def stop(self) -> None:
        """Close the HTTP session. Does not emit ``disconnect``."""
        self.running = False
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(self, method: str, params: Any) -> Any:
        """Issue one JSON-RPC request."""
        if not self.running or self._session is None or self._session.closed:
            if self.running:
                self.running = False
                self._emit("disconnect")
            raise TransientUpstreamError(
                "Hive client is not connected",
                {"method": method}
            )

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            async with self._session.post(self.endpoint, json=payload) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.error("Hive request failed", method=method, error=str(e))
            self._emit("error", e)
            raise TransientUpstreamError(
                f"Hive request {method} failed: {e}",
                {"method": method}
            ) from e

        if data.get("error"):
            message = data["error"].get("message", "unknown error")
            raise TransientUpstreamError(
                f"Hive RPC error from {method}: {message}",
                {"method": method, "error": data["error"]}
            )
        return data.get("result")

    async def get_account_history(
        self,
        account: str,
        start: int = -1,
        limit: int = 1000,
    ) -> List[AccountOperation]:
        """Entries ``(start - limit, start]`` of an account's history, oldest first."""
        result = await self.call(
            "condenser_api.get_account_history",
            [account, start, limit]
        )
        if not isinstance(result, list):
            raise TransientUpstreamError(
                "Unexpected API response format",
                {"account": account, "type": type(result).__name__}
            )

        operations = []
        for entry in result:
            try:
                operations.append(AccountOperation.from_history_entry(entry))
            except ValidationError as e:
                self.logger.warning("Skipping malformed history entry", account=account, error=e.message)
        return operations

    def observe(self, account: str, start_after: Optional[int] = None) -> "AccountOperationStream":
        """Unbounded stream of operations on ``account``."""
        return AccountOperationStream(
            self,
            account,
            start_after=start_after,
            poll_interval=self.poll_interval,
            batch_size=self.batch_size,
        )


class AccountOperationStream:
    """
    Async iterator over new operations of one account.

    Polls the account history and yields entries newer than the last one
    seen. Without ``start_after`` the stream begins at the current head. The
    stream never completes on its own; once a poll fails it raises and stays
    closed, so a new stream is needed after reconnecting.
    """

    def __init__(
        self,
        client: HiveClient,
        account: str,
        start_after: Optional[int] = None,
        poll_interval: float = 3.0,
        batch_size: int = 1000,
    ):
        self.client = client
        self.account = account
        self.last_index = start_after
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.closed = False
        self._buffer: Deque[AccountOperation] = deque()
        self._delivered_index = start_after
        self.logger = logger.bind(service="account_stream", account=account)

    def __aiter__(self):
        return self

    async def __anext__(self) -> AccountOperation:
        while not self._buffer:
            if self.closed:
                raise StopAsyncIteration
            await self._poll()
            if not self._buffer:
                await asyncio.sleep(self.poll_interval)
        operation = self._buffer.popleft()
        self._delivered_index = operation.index
        return operation

    @property
    def position(self) -> Optional[int]:
        """Index of the last operation handed out, or the head once positioned."""
        return self._delivered_index

    def close(self) -> None:
        self.closed = True
        self._buffer.clear()

    async def _poll(self) -> None:
        try:
            entries = await self.client.get_account_history(self.account, -1, self.batch_size)
            if self.last_index is None:
                self.last_index = entries[-1].index if entries else -1
                self._delivered_index = self.last_index
                self.logger.info("Stream positioned at head", last_index=self.last_index)
                return

            new = [e for e in entries if e.index > self.last_index]
            new = await self._fill_gap(new)
        except Exception:
            self.closed = True
            raise

        if new:
            self._buffer.extend(new)
            self.last_index = new[-1].index

    async def _fill_gap(self, new: List[AccountOperation]) -> List[AccountOperation]:
        """Page back when more operations arrived than one poll returns."""
        while new and new[0].index > self.last_index + 1:
            start = new[0].index - 1
            limit = min(self.batch_size, start - self.last_index)
            older = await self.client.get_account_history(self.account, start, limit)
            older = [e for e in older if self.last_index < e.index < new[0].index]
            if not older:
                self.logger.warning(
                    "History gap could not be filled",
                    last_index=self.last_index,
                    next_index=new[0].index
                )
                break
            new = older + new
        return new
