"""
Subscription ledger: the only writer of the subscriptions table.

Grants are idempotent. A grant only writes when the payer has no window or
the current window has already lapsed, and the write itself is a single
atomic upsert guarded on the stored expiration, so duplicate or concurrent
deliveries of the same payment never stack extra days.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

import structlog
from sqlalchemy import func, select, update, case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_tracker.core.database import Database
from subscription_tracker.core.exceptions import (
    DatabaseError,
    PersistenceConflictError,
    ValidationError,
)
from subscription_tracker.models.subscription import Subscription, USERNAME_MAX_LENGTH


logger = structlog.get_logger(__name__)


class GrantStatus(Enum):
    """Result of a grant or manual change."""
    GRANTED = "granted"
    ALREADY_ACTIVE = "already_active"
    EXPIRED_PAYMENT = "expired_payment"
    CONFLICT = "conflict"
    EXTENDED = "extended"
    UNCHANGED = "unchanged"
    REVOKED = "revoked"


@dataclass
class GrantOutcome:
    """What a grant did to the stored window."""
    username: str
    status: GrantStatus
    subscription_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None

    @property
    def changed(self) -> bool:
        return self.status in (GrantStatus.GRANTED, GrantStatus.EXTENDED, GrantStatus.REVOKED)


@dataclass
class SubscriptionStats:
    """Totals for the status endpoint."""
    total: int = 0
    active: int = 0


def validate_username(username: str) -> str:
    """Hive account names are 1-16 characters."""
    if not username or len(username) > USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"Invalid username. Must be between 1 and {USERNAME_MAX_LENGTH} characters.",
            {"username": username}
        )
    return username


class SubscriptionLedger:
    """Persistence of subscription windows."""

    def __init__(
        self,
        database: Database,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.database = database
        self._clock = clock
        self.logger = logger.bind(service="subscription_ledger")

    def _insert(self):
        if self.database.dialect == "postgresql":
            return pg_insert(Subscription)
        if self.database.dialect == "sqlite":
            return sqlite_insert(Subscription)
        raise DatabaseError(
            "Unsupported database dialect for atomic upsert",
            {"dialect": self.database.dialect}
        )

    async def get_subscription(self, username: str) -> Optional[Subscription]:
        async def _get(session: AsyncSession) -> Optional[Subscription]:
            return await session.get(Subscription, username)

        return await self.database.run(_get)

    async def grant_subscription(
        self,
        username: str,
        days: int,
        granted_at: Optional[datetime] = None,
    ) -> GrantOutcome:
        """
        Grant ``days`` of subscription to ``username``.

        Args:
            username: Paying Hive account
            days: Length of the window granted by the product
            granted_at: Start of the window, defaults to now. The historical
                backfill passes the payment's block time.

        Returns:
            GrantOutcome describing whether the stored window changed
        """
        validate_username(username)
        if days < 1:
            raise ValidationError("Grant must be at least one day", {"days": days})

        now = self._clock()
        start = granted_at or now
        candidate_expiration = start + timedelta(days=days)

        if candidate_expiration <= now:
            self.logger.info(
                "Payment window already elapsed, nothing to grant",
                username=username,
                granted_at=start.isoformat(),
                expiration_date=candidate_expiration.isoformat()
            )
            return GrantOutcome(username, GrantStatus.EXPIRED_PAYMENT, start, candidate_expiration)

        async def _grant(session: AsyncSession) -> GrantOutcome:
            existing = await session.get(Subscription, username)
            if existing is not None and not now > existing.expiration_date:
                return GrantOutcome(
                    username,
                    GrantStatus.ALREADY_ACTIVE,
                    existing.subscription_date,
                    existing.expiration_date
                )

            try:
                await self._upsert_lapsed(session, username, start, candidate_expiration, now)
            except PersistenceConflictError:
                current = await session.get(Subscription, username, populate_existing=True)
                return GrantOutcome(
                    username,
                    GrantStatus.CONFLICT,
                    current.subscription_date if current else None,
                    current.expiration_date if current else None
                )
            return GrantOutcome(username, GrantStatus.GRANTED, start, candidate_expiration)

        outcome = await self.database.run(_grant)

        if outcome.status == GrantStatus.GRANTED:
            self.logger.info(
                "Subscription processed",
                username=username,
                subscription_date=outcome.subscription_date.isoformat(),
                expiration_date=outcome.expiration_date.isoformat(),
                days=days
            )
        else:
            self.logger.info(
                "No update needed, existing subscription is still active",
                username=username,
                status=outcome.status.value,
                expiration_date=outcome.expiration_date.isoformat() if outcome.expiration_date else None
            )
        return outcome

    async def _upsert_lapsed(
        self,
        session: AsyncSession,
        username: str,
        subscription_date: datetime,
        expiration_date: datetime,
        now: datetime,
    ) -> None:
        """Insert, or overwrite a window that lapsed before ``now``."""
        stmt = self._insert().values(
            username=username,
            subscription_date=subscription_date,
            expiration_date=expiration_date,
            active=True,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Subscription.username],
            set_={
                "subscription_date": stmt.excluded.subscription_date,
                "expiration_date": stmt.excluded.expiration_date,
                "active": True,
                "updated_at": now,
            },
            where=Subscription.expiration_date < now,
        ).returning(Subscription.username)

        result = await session.execute(stmt)
        if result.scalar_one_or_none() is None:
            raise PersistenceConflictError(username)

    async def grant_manual(self, username: str, days: int) -> GrantOutcome:
        """
        Manually grant a trial or revoke a subscription.

        ``days > 0`` moves the expiration to now + days when that is later
        than the stored one. ``days == 0`` revokes: the window ends now.
        """
        validate_username(username)
        if days < 0:
            raise ValidationError("Invalid number of days. Must not be negative.", {"days": days})

        now = self._clock()
        if days == 0:
            return await self._revoke(username, now)

        expiration_date = now + timedelta(days=days)

        async def _extend(session: AsyncSession) -> GrantOutcome:
            stmt = self._insert().values(
                username=username,
                subscription_date=now,
                expiration_date=expiration_date,
                active=True,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Subscription.username],
                set_={
                    "subscription_date": stmt.excluded.subscription_date,
                    "expiration_date": stmt.excluded.expiration_date,
                    "active": True,
                    "updated_at": now,
                },
                where=Subscription.expiration_date < stmt.excluded.expiration_date,
            ).returning(Subscription.username)

            result = await session.execute(stmt)
            if result.scalar_one_or_none() is None:
                current = await session.get(Subscription, username)
                return GrantOutcome(
                    username,
                    GrantStatus.UNCHANGED,
                    current.subscription_date,
                    current.expiration_date
                )
            return GrantOutcome(username, GrantStatus.EXTENDED, now, expiration_date)

        outcome = await self.database.run(_extend)
        self.logger.info(
            "Added free trial" if outcome.changed else "Existing subscription runs longer, trial not applied",
            username=username,
            days=days,
            expiration_date=outcome.expiration_date.isoformat()
        )
        return outcome

    async def _revoke(self, username: str, now: datetime) -> GrantOutcome:
        async def _update(session: AsyncSession) -> GrantOutcome:
            result = await session.execute(
                update(Subscription)
                .where(Subscription.username == username)
                .values(
                    expiration_date=case(
                        (Subscription.expiration_date > now, now),
                        else_=Subscription.expiration_date
                    ),
                    active=False,
                    updated_at=now,
                )
                .returning(Subscription.subscription_date, Subscription.expiration_date)
            )
            row = result.one_or_none()
            if row is None:
                return GrantOutcome(username, GrantStatus.UNCHANGED)
            return GrantOutcome(username, GrantStatus.REVOKED, row[0], row[1])

        outcome = await self.database.run(_update)
        self.logger.info("Subscription revoked", username=username, status=outcome.status.value)
        return outcome

    async def deactivate_expired(self) -> List[str]:
        """Flip ``active`` off for every lapsed window; returns the usernames."""
        now = self._clock()

        async def _sweep(session: AsyncSession) -> List[str]:
            result = await session.execute(
                update(Subscription)
                .where(Subscription.expiration_date < now)
                .where(Subscription.active.is_(True))
                .values(active=False, updated_at=now)
                .returning(Subscription.username)
            )
            return list(result.scalars().all())

        usernames = await self.database.run(_sweep)
        if usernames:
            self.logger.info("Deactivated subscriptions", count=len(usernames), usernames=usernames)
        else:
            self.logger.debug("No subscriptions to deactivate")
        return usernames

    async def list_subscriptions(self, active_only: bool = False) -> List[Subscription]:
        async def _list(session: AsyncSession) -> List[Subscription]:
            query = select(Subscription).order_by(Subscription.expiration_date.desc())
            if active_only:
                query = query.where(Subscription.active.is_(True))
            result = await session.execute(query)
            return list(result.scalars().all())

        return await self.database.run(_list)

    async def get_statistics(self) -> SubscriptionStats:
        async def _stats(session: AsyncSession) -> SubscriptionStats:
            result = await session.execute(
                select(
                    func.count(Subscription.username),
                    func.coalesce(func.sum(case((Subscription.active.is_(True), 1), else_=0)), 0),
                )
            )
            total, active = result.one()
            return SubscriptionStats(total=int(total or 0), active=int(active or 0))

        return await self.database.run(_stats)
