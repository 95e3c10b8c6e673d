"""
Database models for the subscription tracker.
"""

from .base import Base, BaseModel, TimestampMixin
from .subscription import Subscription, USERNAME_MAX_LENGTH

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Subscription",
    "USERNAME_MAX_LENGTH",
]
