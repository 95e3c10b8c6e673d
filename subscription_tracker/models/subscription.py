"""
Subscription window per Hive account.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, Boolean, DateTime, Index, true
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


USERNAME_MAX_LENGTH = 16


class Subscription(BaseModel, TimestampMixin):
    """Current subscription window of one payer."""

    __tablename__ = "subscriptions"

    username: Mapped[str] = mapped_column(
        String(USERNAME_MAX_LENGTH),
        primary_key=True,
        comment="Hive account that paid for the subscription"
    )

    subscription_date: Mapped[datetime] = mapped_column(
        DateTime,
        comment="Start of the most recently granted window"
    )

    expiration_date: Mapped[datetime] = mapped_column(
        DateTime,
        comment="End of the current window"
    )

    active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        server_default=true(),
        comment="Cached flag, true while expiration_date is in the future"
    )

    __table_args__ = (
        Index("idx_username", "username"),
        Index("idx_expiration", "expiration_date"),
    )

    def is_active_at(self, moment: datetime) -> bool:
        return self.expiration_date > moment

    @property
    def remaining_days(self) -> Optional[int]:
        if not self.active:
            return None
        return max(0, (self.expiration_date - datetime.utcnow()).days)
