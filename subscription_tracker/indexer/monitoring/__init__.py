"""
Monitoring components for the Hive operation stream.
"""

from .connection_supervisor import ConnectionSupervisor
from .transfer_processor import SubscriptionMatch, TransferClassifier, TransferProcessor

__all__ = [
    "ConnectionSupervisor",
    "SubscriptionMatch",
    "TransferClassifier",
    "TransferProcessor",
]
