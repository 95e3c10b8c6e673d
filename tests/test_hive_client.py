"""
Tests for the Hive client and its polling operation stream.
"""

import pytest

from subscription_tracker.core.exceptions import TransientUpstreamError
from subscription_tracker.services.hive_client import AccountOperationStream, HiveClient

from tests.fakes import make_transfer


class GrowingHistory:
    """History that gains operations between polls."""

    def __init__(self, snapshots):
        self.snapshots = snapshots
        self.polls = 0
        self.requests = []
        self.fail_on_poll = None

    async def get_account_history(self, account, start=-1, limit=1000):
        self.requests.append((start, limit))
        if start < 0:
            self.polls += 1
            if self.fail_on_poll == self.polls:
                raise TransientUpstreamError("node timed out")
        ops = self.snapshots[min(self.polls, len(self.snapshots)) - 1]
        if start < 0:
            return ops[-limit:]
        return [op for op in ops if start - limit <= op.index <= start]


def history(*indexes):
    return [make_transfer(i) for i in indexes]


async def take(stream, count):
    items = []
    async for operation in stream:
        items.append(operation.index)
        if len(items) == count:
            break
    return items


@pytest.mark.asyncio
async def test_stream_starts_at_head():
    client = GrowingHistory([history(0, 1, 2), history(0, 1, 2, 3, 4)])
    stream = AccountOperationStream(client, "subscriptions", poll_interval=0)

    assert await take(stream, 2) == [3, 4]
    assert stream.last_index == 4


@pytest.mark.asyncio
async def test_stream_position_follows_delivered_operations():
    client = GrowingHistory([history(0, 1, 2), history(0, 1, 2, 3, 4)])
    stream = AccountOperationStream(client, "subscriptions", poll_interval=0)

    assert stream.position is None
    assert await take(stream, 1) == [3]
    assert stream.position == 3
    assert stream.last_index == 4


@pytest.mark.asyncio
async def test_stream_resumes_after_index():
    client = GrowingHistory([history(0, 1, 2, 3)])
    stream = AccountOperationStream(client, "subscriptions", start_after=1, poll_interval=0)

    assert await take(stream, 2) == [2, 3]


@pytest.mark.asyncio
async def test_stream_fills_gap_larger_than_batch():
    client = GrowingHistory([history(0, 1, 2), history(*range(8))])
    stream = AccountOperationStream(client, "subscriptions", poll_interval=0, batch_size=2)

    assert await take(stream, 5) == [3, 4, 5, 6, 7]


@pytest.mark.asyncio
async def test_stream_closes_after_failure():
    client = GrowingHistory([history(0)])
    client.fail_on_poll = 2
    stream = AccountOperationStream(client, "subscriptions", poll_interval=0)

    with pytest.raises(TransientUpstreamError):
        await stream.__anext__()

    assert stream.closed
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_call_without_session_fails_fast(test_settings):
    client = HiveClient(test_settings)

    with pytest.raises(TransientUpstreamError):
        await client.call("condenser_api.get_dynamic_global_properties", [])


@pytest.mark.asyncio
async def test_lost_session_emits_disconnect(test_settings):
    client = HiveClient(test_settings)
    events = []
    client.on("disconnect", events.append)
    client.running = True

    with pytest.raises(TransientUpstreamError):
        await client.call("condenser_api.get_account_history", ["subscriptions", -1, 10])

    assert events == [None]
    assert client.running is False


def test_unknown_event_rejected(test_settings):
    with pytest.raises(ValueError):
        HiveClient(test_settings).on("reconnect", lambda error: None)


def test_endpoint_from_node_name(test_settings):
    assert HiveClient(test_settings).endpoint == "https://api.hive.blog"
