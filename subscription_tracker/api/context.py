"""
Explicit references handed to the HTTP layer by the composition root.
"""

from dataclasses import dataclass
from typing import Optional

from subscription_tracker.core.config import Settings
from subscription_tracker.core.database import Database
from subscription_tracker.indexer.monitoring.connection_supervisor import ConnectionSupervisor
from subscription_tracker.indexer.monitoring.transfer_processor import TransferProcessor
from subscription_tracker.scheduler.expiration_sweeper import ExpirationSweeper
from subscription_tracker.services.health_monitor import HealthMonitor
from subscription_tracker.services.subscription_ledger import SubscriptionLedger


@dataclass
class ServiceContext:
    config: Settings
    database: Database
    ledger: SubscriptionLedger
    health_monitor: HealthMonitor
    supervisor: ConnectionSupervisor
    sweeper: Optional[ExpirationSweeper] = None
    processor: Optional[TransferProcessor] = None
