"""
Shared fixtures: settings, a throwaway SQLite database and the ledger.
"""

from decimal import Decimal

import pytest
import pytest_asyncio

from subscription_tracker.core.config import ProductConfig, Settings
from subscription_tracker.core.database import Database
from subscription_tracker.core.resilience import CircuitBreaker, RetryExecutor
from subscription_tracker.services.subscription_ledger import SubscriptionLedger

from tests.fakes import FakeClock


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="development",
        database_url=f"sqlite:///{tmp_path / 'subscriptions.db'}",
        subscription_payment_account="subscriptions",
        subscription_account="myaccount",
        subscription_amount=Decimal("5.000"),
        subscription_currency="HBD",
        subscription_days=31,
        max_reconnect_attempts=2,
        reconnect_delay=5.0,
    )


@pytest.fixture
def standard_product() -> ProductConfig:
    return ProductConfig(
        name="standard",
        account="subscriptions",
        amount=Decimal("5.000"),
        currency="HBD",
        days=31,
        memo_account="myaccount",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def database(test_settings):
    """Fresh SQLite database with the schema created."""
    db = Database(
        config=test_settings,
        circuit_breaker=CircuitBreaker("database", failure_threshold=5, reset_timeout=30),
        retry=RetryExecutor("database", max_attempts=1),
    )
    await db.init()
    await db.create_tables()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def ledger(database, clock) -> SubscriptionLedger:
    return SubscriptionLedger(database, clock=clock)
