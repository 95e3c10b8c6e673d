"""
Declarative base and shared column mixins.
"""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all models."""


class BaseModel(Base):
    """Abstract base with a readable repr."""

    __abstract__ = True

    def to_dict(self) -> dict:
        return {
            column.name: getattr(self, column.key)
            for column in self.__table__.columns
        }

    def __repr__(self) -> str:
        pk = ", ".join(
            f"{column.key}={getattr(self, column.key)!r}"
            for column in self.__table__.primary_key.columns
        )
        return f"<{type(self).__name__} {pk}>"


class TimestampMixin:
    """Creation and last-mutation timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        comment="Row creation time"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        comment="Last mutation time"
    )
