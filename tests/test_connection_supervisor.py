"""
Tests for the connection supervisor state machine.
"""

import asyncio

import pytest

from subscription_tracker.core.exceptions import ReconnectionExhaustedError, RetryExhaustedError
from subscription_tracker.core.resilience import CircuitBreaker, RetryExecutor
from subscription_tracker.indexer.core.types import ConnectionPhase
from subscription_tracker.indexer.monitoring.connection_supervisor import ConnectionSupervisor
from subscription_tracker.services.hive_client import AccountOperationStream

from tests.fakes import ClientFactory, FakeHiveClient, RecordingSleep, make_transfer, wait_until


class RecordingHandler:
    def __init__(self, failing_indexes=()):
        self.failing_indexes = set(failing_indexes)
        self.seen = []

    async def __call__(self, operation):
        self.seen.append(operation.index)
        if operation.index in self.failing_indexes:
            raise RuntimeError(f"cannot process {operation.index}")


def make_supervisor(test_settings, factory, handler=None, accounts=("subscriptions",), retry_attempts=1):
    sleep = RecordingSleep()
    supervisor = ConnectionSupervisor(
        accounts=list(accounts),
        handler=handler or RecordingHandler(),
        client_factory=factory,
        config=test_settings,
        circuit_breaker=CircuitBreaker("hive-connection", failure_threshold=100, reset_timeout=60),
        retry=RetryExecutor("hive-connection", max_attempts=retry_attempts, sleep=sleep),
        sleep=sleep,
    )
    return supervisor, sleep


class PollingHiveClient(FakeHiveClient):
    """Client double whose streams poll the shared history like the real client."""

    def observe(self, account, start_after=None):
        stream = AccountOperationStream(self, account, start_after=start_after, poll_interval=60)
        self.streams[account] = stream
        return stream


async def run_in_background(supervisor):
    task = asyncio.create_task(supervisor.run())
    await wait_until(lambda: supervisor.is_connected and supervisor._readers and all(
        account in supervisor.client.streams for account in supervisor.accounts
    ))
    return task


@pytest.mark.asyncio
async def test_connect_is_noop_when_connected(test_settings):
    factory = ClientFactory()
    supervisor, _ = make_supervisor(test_settings, factory)

    await supervisor.connect()
    await supervisor.connect()

    assert len(factory.created) == 1
    assert supervisor.phase == ConnectionPhase.CONNECTED
    assert supervisor.reconnect_attempts == 0
    await supervisor.stop()


@pytest.mark.asyncio
async def test_each_connect_attempt_uses_fresh_client(test_settings):
    broken = FakeHiveClient(fail_start=True)
    factory = ClientFactory(broken)
    supervisor, sleep = make_supervisor(test_settings, factory, retry_attempts=3)

    await supervisor.connect()

    assert len(factory.created) == 2
    assert broken.stopped
    assert supervisor.client is factory.created[1]
    assert sleep.delays == [1.0]
    await supervisor.stop()


@pytest.mark.asyncio
async def test_failed_connect_leaves_disconnected(test_settings):
    factory = ClientFactory(FakeHiveClient(fail_start=True))
    supervisor, _ = make_supervisor(test_settings, factory)

    with pytest.raises(RetryExhaustedError):
        await supervisor.connect()

    assert supervisor.phase == ConnectionPhase.DISCONNECTED
    assert supervisor.client is None
    assert "node unreachable" in supervisor.last_error


@pytest.mark.asyncio
async def test_operations_handled_in_order_and_failures_isolated(test_settings):
    factory = ClientFactory()
    handler = RecordingHandler(failing_indexes={2})
    supervisor, _ = make_supervisor(test_settings, factory, handler=handler)
    task = await run_in_background(supervisor)

    stream = supervisor.client.streams["subscriptions"]
    for index in (1, 2, 3):
        stream.push(make_transfer(index))

    await wait_until(lambda: len(handler.seen) == 3)
    assert handler.seen == [1, 2, 3]
    assert supervisor.is_connected
    assert supervisor.last_seen_index == {"subscriptions": 3}

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_one_stream_per_account(test_settings):
    factory = ClientFactory()
    supervisor, _ = make_supervisor(test_settings, factory, accounts=("subscriptions", "premium"))
    task = await run_in_background(supervisor)

    assert set(supervisor.client.streams) == {"subscriptions", "premium"}

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_client_error_triggers_reconnect_and_resubscribe(test_settings):
    factory = ClientFactory()
    handler = RecordingHandler()
    supervisor, sleep = make_supervisor(test_settings, factory, handler=handler)
    task = await run_in_background(supervisor)

    first = supervisor.client
    first.streams["subscriptions"].push(make_transfer(5))
    await wait_until(lambda: handler.seen == [5])

    first.emit("error", ConnectionError("socket closed"))
    await wait_until(lambda: len(factory.created) == 2 and "subscriptions" in factory.created[1].streams)

    second = factory.created[1]
    assert first.stopped
    assert supervisor.client is second
    assert supervisor.is_connected
    assert supervisor.reconnect_attempts == 0
    assert sleep.delays == [5.0]
    assert second.streams["subscriptions"].start_after == 5

    second.streams["subscriptions"].push(make_transfer(6))
    await wait_until(lambda: handler.seen == [5, 6])

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_stream_failure_triggers_reconnect(test_settings):
    factory = ClientFactory()
    supervisor, _ = make_supervisor(test_settings, factory)
    task = await run_in_background(supervisor)

    supervisor.client.streams["subscriptions"].push(ConnectionError("stream reset"))
    await wait_until(lambda: len(factory.created) == 2 and supervisor.is_connected)

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_completed_stream_is_treated_as_disconnect(test_settings):
    factory = ClientFactory()
    supervisor, _ = make_supervisor(test_settings, factory)
    task = await run_in_background(supervisor)

    supervisor.client.streams["subscriptions"].end()
    await wait_until(lambda: len(factory.created) == 2 and supervisor.is_connected)

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_reconnect_succeeds_after_failed_attempt(test_settings):
    factory = ClientFactory(FakeHiveClient(), FakeHiveClient(fail_start=True))
    supervisor, sleep = make_supervisor(test_settings, factory)
    task = await run_in_background(supervisor)

    supervisor.client.emit("disconnect")
    await wait_until(lambda: len(factory.created) == 3 and supervisor.is_connected)

    assert sleep.delays == [5.0, 5.0]
    assert supervisor.reconnect_attempts == 0

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_reconnect_budget_exhausted(test_settings):
    factory = ClientFactory(
        FakeHiveClient(),
        FakeHiveClient(fail_start=True),
        FakeHiveClient(fail_start=True),
        FakeHiveClient(fail_start=True),
    )
    supervisor, sleep = make_supervisor(test_settings, factory)
    task = await run_in_background(supervisor)

    supervisor.client.emit("error", ConnectionError("gone"))

    with pytest.raises(ReconnectionExhaustedError) as exc_info:
        await task

    assert exc_info.value.attempts == 2
    assert len(factory.created) == 3
    assert sleep.delays == [5.0, 5.0]
    assert supervisor.phase == ConnectionPhase.DISCONNECTED
    await supervisor.stop()


@pytest.mark.asyncio
async def test_duplicate_disconnect_signals_reconnect_once(test_settings):
    factory = ClientFactory()
    supervisor, sleep = make_supervisor(test_settings, factory)
    task = await run_in_background(supervisor)

    client = supervisor.client
    client.emit("error", ConnectionError("first"))
    client.emit("disconnect")
    await wait_until(lambda: len(factory.created) == 2 and supervisor.is_connected)

    assert sleep.delays == [5.0]

    await supervisor.stop()
    await task


@pytest.mark.asyncio
async def test_stop_closes_everything(test_settings):
    factory = ClientFactory()
    supervisor, _ = make_supervisor(test_settings, factory)
    task = await run_in_background(supervisor)
    client = supervisor.client

    await supervisor.stop()
    await task

    assert client.stopped
    assert client.streams["subscriptions"].closed
    assert supervisor.client is None
    assert supervisor.phase == ConnectionPhase.DISCONNECTED
    state = supervisor.get_state()
    assert state["is_connected"] is False
    assert state["circuit_breaker_state"]["is_open"] is False


@pytest.mark.asyncio
async def test_quiet_account_resumes_from_head_seen_before_outage(test_settings):
    history = [make_transfer(index, memo="thanks") for index in range(5)]
    factory = ClientFactory(PollingHiveClient(history=history), PollingHiveClient(history=history))
    handler = RecordingHandler()
    supervisor, _ = make_supervisor(test_settings, factory, handler=handler)
    task = asyncio.create_task(supervisor.run())

    await wait_until(lambda: supervisor.is_connected and "subscriptions" in supervisor.client.streams)
    first = supervisor.client
    await wait_until(lambda: first.streams["subscriptions"].position == 4)

    first.emit("error", ConnectionError("socket closed"))
    history.append(make_transfer(5))
    await wait_until(lambda: handler.seen == [5])

    assert supervisor.client is factory.created[1]
    assert supervisor.last_seen_index == {"subscriptions": 5}

    await supervisor.stop()
    await task
