"""
Tests for the health and status endpoints.
"""

import socket

import pytest
from fastapi.testclient import TestClient

from subscription_tracker.api.context import ServiceContext
from subscription_tracker.api.main import create_app, create_server
from subscription_tracker.core.exceptions import HealthServerError
from subscription_tracker.core.resilience import CircuitBreaker
from subscription_tracker.indexer.core.types import ConnectionPhase
from subscription_tracker.indexer.monitoring.connection_supervisor import ConnectionSupervisor
from subscription_tracker.scheduler.expiration_sweeper import ExpirationSweeper
from subscription_tracker.services.health_monitor import HealthMonitor
from subscription_tracker.services.subscription_ledger import SubscriptionStats

from tests.fakes import FakeHiveClient, FakeTimer


class StubDatabase:
    def __init__(self):
        self.circuit_breaker = CircuitBreaker("database")
        self.reachable = True

    async def run(self, operation):
        if not self.reachable:
            raise ConnectionError("connection refused")
        return None

    def pool_status(self):
        return None


class StubLedger:
    async def get_statistics(self):
        return SubscriptionStats(total=3, active=2)

    async def deactivate_expired(self):
        return []


async def ignore(operation):
    return None


@pytest.fixture
def timer() -> FakeTimer:
    return FakeTimer()


@pytest.fixture
def context(test_settings, timer) -> ServiceContext:
    supervisor = ConnectionSupervisor(
        ["subscriptions"],
        ignore,
        client_factory=FakeHiveClient,
        config=test_settings,
    )
    supervisor.phase = ConnectionPhase.CONNECTED
    ledger = StubLedger()
    return ServiceContext(
        config=test_settings,
        database=StubDatabase(),
        ledger=ledger,
        health_monitor=HealthMonitor(stale_after=7200, clock=timer),
        supervisor=supervisor,
        sweeper=ExpirationSweeper(ledger),
    )


@pytest.fixture
def client(context) -> TestClient:
    return TestClient(create_app(context))


def test_healthy(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db_status"] == "connected"
    assert body["hive_status"] == "connected"
    assert body["last_check"].startswith("2023-11-14T22:13:20")


def test_unhealthy_when_database_unreachable(client, context):
    context.database.reachable = False

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert "connection refused" in response.json()["error"]


def test_unhealthy_when_checks_stalled(client, timer):
    timer.advance(7201)

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["error"] == "Periodic checks may be stalled"


def test_unhealthy_when_hive_disconnected(client, context):
    context.supervisor.phase = ConnectionPhase.CONNECTING

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["error"] == "Hive connection is not established"


def test_status_reports_components(client, context, timer):
    timer.advance(120)
    context.supervisor.reconnect_attempts = 1

    response = client.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["uptime"] == 120
    assert body["database"]["connected"] is True
    assert body["database"]["statistics"] == {"total_subscriptions": 3, "active_subscriptions": 2}
    assert body["hive"]["connected"] is True
    assert body["hive"]["phase"] == "connected"
    assert body["hive"]["reconnect_attempts"] == 1
    assert body["sweeper"]["interval_seconds"] == 3600
    assert body["processing"] == {}


def test_debug_outside_production(client):
    response = client.get("/debug")

    assert response.status_code == 200
    body = response.json()
    assert body["env"]["environment"] == "development"
    assert body["database"]["pool_status"] == "Not available"
    assert body["process"]["pid"] > 0


def test_no_debug_in_production(context, test_settings):
    context.config = test_settings.model_copy(update={"environment": "production"})

    response = TestClient(create_app(context)).get("/debug")

    assert response.status_code == 404


@pytest.fixture
def busy_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


@pytest.mark.asyncio
async def test_server_reports_taken_port_as_error(context, busy_port):
    context.config = context.config.model_copy(
        update={"health_check_host": "127.0.0.1", "health_check_port": busy_port}
    )
    server = create_server(context)

    with pytest.raises(HealthServerError) as exc_info:
        await server.serve()

    assert exc_info.value.details == {"host": "127.0.0.1", "port": busy_port}
