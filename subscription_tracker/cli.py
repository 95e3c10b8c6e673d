#!/usr/bin/env python3
"""
Management commands for the subscription tracker.
"""

import asyncio
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from subscription_tracker.core.database import Database
from subscription_tracker.core.exceptions import SubscriptionTrackerException
from subscription_tracker.core.logging import setup_logging, get_logger
from subscription_tracker.main import TrackerMain
from subscription_tracker.scheduler.expiration_sweeper import ExpirationSweeper
from subscription_tracker.services.subscription_ledger import GrantStatus, SubscriptionLedger

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Subscription tracker management commands")


def _fail(message: str) -> None:
    console.print(f"❌ {message}")
    raise typer.Exit(code=1)


def _run(coro, action: str):
    """Run a command coroutine; database and service errors end the command cleanly."""
    try:
        return asyncio.run(coro)
    except SubscriptionTrackerException as e:
        _fail(f"{action}: {e.message}")
    except (SQLAlchemyError, OSError) as e:
        _fail(f"{action}: {e}")


@app.command("init-db")
def init_db():
    """Create the subscriptions table."""
    async def _init():
        setup_logging()
        database = Database()
        await database.init()
        try:
            await database.create_tables()
        finally:
            await database.close()
        console.print("✅ Database initialized successfully!")

    _run(_init(), "Database initialization failed")


@app.command("grant-trial")
def grant_trial(
    username: Optional[str] = typer.Argument(None, help="Hive account name"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Trial length, 0 revokes"),
):
    """Grant a free trial; zero days revokes the subscription."""
    if username is None:
        username = typer.prompt("Enter username").strip()
    if days is None:
        days = typer.prompt("Enter number of days for free trial", type=int)

    if not 1 <= len(username) <= 16:
        _fail("Invalid username. Must be between 1 and 16 characters.")
    if days < 0:
        _fail("Invalid number of days. Must be a non-negative number.")

    async def _grant():
        setup_logging()
        database = Database()
        await database.init()
        try:
            return await SubscriptionLedger(database).grant_manual(username, days)
        finally:
            await database.close()

    outcome = _run(_grant(), "Error adding free trial")

    if outcome.status == GrantStatus.REVOKED:
        console.print(f"🗑️ Subscription for {username} revoked")
    elif outcome.status == GrantStatus.EXTENDED:
        console.print(
            f"✅ Added {days} days free trial for {username}, "
            f"expires {outcome.expiration_date:%Y-%m-%d %H:%M}"
        )
    elif outcome.expiration_date is not None:
        console.print(
            f"ℹ️ {username} already runs until {outcome.expiration_date:%Y-%m-%d %H:%M}, nothing changed"
        )
    else:
        console.print(f"ℹ️ {username} has no subscription, nothing changed")


@app.command()
def revoke(username: str):
    """Revoke a subscription immediately."""
    grant_trial(username=username, days=0)


@app.command()
def backfill(days: int = typer.Option(31, "--days", "-d", help="Window to scan")):
    """Scan recent account history and grant missed payments."""
    async def _backfill():
        setup_logging()
        tracker = TrackerMain()
        await tracker.database.init()
        try:
            return await tracker.run_backfill(days)
        finally:
            await tracker.database.close()

    stats = _run(_backfill(), "Backfill failed")
    if stats is None:
        _fail("Backfill failed, see logs")

    console.print(
        f"✅ Backfill finished: scanned {stats.scanned}, matched {stats.matched}, "
        f"granted {stats.granted}, failed {stats.failed}"
    )
    if stats.failed_accounts:
        _fail(f"History could not be read for: {', '.join(stats.failed_accounts)}")


@app.command()
def sweep():
    """Deactivate lapsed subscriptions once."""
    async def _sweep():
        setup_logging()
        database = Database()
        await database.init()
        try:
            return await ExpirationSweeper(SubscriptionLedger(database)).sweep_once()
        finally:
            await database.close()

    usernames = _run(_sweep(), "Sweep failed")
    console.print(f"✅ Deactivated {len(usernames)} subscriptions")
    for username in usernames:
        console.print(f"  • {username}")


@app.command()
def show(active_only: bool = typer.Option(False, "--active", help="Only active subscriptions")):
    """List stored subscriptions."""
    table = Table(title="Subscriptions")
    table.add_column("Username", style="cyan")
    table.add_column("Subscribed", style="white")
    table.add_column("Expires", style="white")
    table.add_column("Active", style="green")

    async def _show():
        setup_logging()
        database = Database()
        await database.init()
        try:
            return await SubscriptionLedger(database).list_subscriptions(active_only=active_only)
        finally:
            await database.close()

    for sub in _run(_show(), "Listing subscriptions failed"):
        table.add_row(
            sub.username,
            f"{sub.subscription_date:%Y-%m-%d %H:%M}",
            f"{sub.expiration_date:%Y-%m-%d %H:%M}",
            "✅" if sub.active else "❌",
        )

    console.print(table)


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        database = Database()
        await database.init()
        try:
            return await database.health_check()
        finally:
            await database.close()

    if _run(_health(), "Health check failed"):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


if __name__ == "__main__":
    app()
