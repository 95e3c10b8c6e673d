"""
Test doubles for the Hive client, clocks and sleeps.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from subscription_tracker.core.exceptions import TransientUpstreamError
from subscription_tracker.services.operation_parser import AccountOperation


NOW = datetime(2024, 5, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock for datetime-based components."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and yields once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_transfer(
    index: int,
    sender: str = "alice",
    recipient: str = "subscriptions",
    amount: str = "5.000 HBD",
    memo: str = "subscribe:myaccount",
    timestamp: datetime = NOW,
    op_type: str = "transfer",
) -> AccountOperation:
    return AccountOperation(
        index=index,
        transaction_id=f"trx{index}",
        block_num=1000 + index,
        timestamp=timestamp,
        op_type=op_type,
        op_data={"from": sender, "to": recipient, "amount": amount, "memo": memo},
    )


class FakeStream:
    """Operation stream fed by the test through an asyncio.Queue."""

    _END = object()

    def __init__(self, account: str, start_after: Optional[int]):
        self.account = account
        self.start_after = start_after
        self.queue: asyncio.Queue = asyncio.Queue()
        self.position = start_after
        self.closed = False

    def push(self, item) -> None:
        self.queue.put_nowait(item)

    def end(self) -> None:
        self.queue.put_nowait(self._END)

    def __aiter__(self):
        return self

    async def __anext__(self) -> AccountOperation:
        item = await self.queue.get()
        if item is self._END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        self.position = item.index
        return item

    def close(self) -> None:
        self.closed = True


class FakeHiveClient:
    """In-memory HiveClient double."""

    def __init__(self, fail_start: bool = False, history: Optional[List[AccountOperation]] = None):
        self.fail_start = fail_start
        self.history = history
        self.listeners: Dict[str, list] = {"error": [], "disconnect": []}
        self.started = False
        self.stopped = False
        self.streams: Dict[str, FakeStream] = {}

    def on(self, event: str, callback) -> None:
        self.listeners[event].append(callback)

    def emit(self, event: str, error: Optional[BaseException] = None) -> None:
        for callback in self.listeners[event]:
            callback(error)

    async def start(self) -> None:
        if self.fail_start:
            raise TransientUpstreamError("node unreachable")
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def get_account_history(self, account: str, start: int = -1, limit: int = 1000):
        if self.history is None:
            raise TransientUpstreamError("history unavailable")
        ops = [op for op in self.history if op.op_data.get("to") == account]
        if start < 0:
            return ops[-limit:]
        return [op for op in ops if start - limit <= op.index <= start]

    def observe(self, account: str, start_after: Optional[int] = None) -> FakeStream:
        stream = FakeStream(account, start_after)
        self.streams[account] = stream
        return stream


class ClientFactory:
    """Hands out prepared clients in order, then healthy ones."""

    def __init__(self, *clients: FakeHiveClient):
        self.pending = list(clients)
        self.created: List[FakeHiveClient] = []

    def __call__(self) -> FakeHiveClient:
        client = self.pending.pop(0) if self.pending else FakeHiveClient()
        self.created.append(client)
        return client


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


