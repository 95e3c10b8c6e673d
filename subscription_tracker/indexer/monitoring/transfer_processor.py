"""
Transfer classification and processing.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from subscription_tracker.core.config import ProductConfig
from subscription_tracker.core.exceptions import ClassificationMismatch, ValidationError
from subscription_tracker.core.resilience import RetryExecutor
from subscription_tracker.indexer.core.types import ProcessingStats
from subscription_tracker.services.operation_parser import (
    AccountOperation,
    TransferEvent,
    normalize_operation,
)
from subscription_tracker.services.subscription_ledger import GrantOutcome, SubscriptionLedger


logger = structlog.get_logger(__name__)


@dataclass
class SubscriptionMatch:
    """A qualifying transfer and the product it pays for."""
    event: TransferEvent
    product: ProductConfig

    @property
    def username(self) -> str:
        return self.event.sender


class TransferClassifier:
    """
    Decides whether a transfer pays for one of the configured products.

    Matching is exact: recipient account, currency code, amount and, when the
    product names a memo account, the memo ``subscribe:<account>`` compared
    case-insensitively.
    """

    def __init__(self, products: Iterable[ProductConfig]):
        self.products: List[ProductConfig] = list(products)
        if not self.products:
            raise ValueError("At least one product must be configured")
        self.payment_accounts = {p.account for p in self.products}

    def match(self, event: TransferEvent) -> ProductConfig:
        """Product paid for by ``event``; raises ClassificationMismatch otherwise."""
        if event.recipient not in self.payment_accounts:
            raise ClassificationMismatch("recipient is not a payment account", {"to": event.recipient})

        candidates = [p for p in self.products if p.account == event.recipient]
        candidates = [p for p in candidates if p.currency == event.currency_code]
        if not candidates:
            raise ClassificationMismatch("currency mismatch", {"currency": event.currency_code})

        memo = event.memo.lower()
        for product in candidates:
            if product.amount != event.amount:
                continue
            if product.required_memo is not None and memo != product.required_memo:
                continue
            return product

        raise ClassificationMismatch(
            "no product matches amount and memo",
            {"amount": str(event.amount), "memo": event.memo}
        )

    def classify(self, operation: AccountOperation) -> Optional[SubscriptionMatch]:
        """SubscriptionMatch for a qualifying operation, None for anything else."""
        try:
            event = normalize_operation(operation)
            if event is None:
                raise ClassificationMismatch("not a transfer", {"op_type": operation.op_type})
            product = self.match(event)
        except ClassificationMismatch as e:
            logger.debug(
                "Operation ignored",
                index=operation.index,
                reason=e.reason,
                **e.details
            )
            return None
        except ValidationError as e:
            logger.warning(
                "Transfer could not be parsed",
                index=operation.index,
                transaction_id=operation.transaction_id,
                error=e.message
            )
            return None

        return SubscriptionMatch(event=event, product=product)


class TransferProcessor:
    """
    Classifies operations and grants subscriptions for qualifying ones.

    Only the grant runs inside the retry executor; the grant is idempotent so
    a retried partial failure cannot stack extra days.
    """

    def __init__(
        self,
        classifier: TransferClassifier,
        ledger: SubscriptionLedger,
        retry: RetryExecutor,
        stats: Optional[ProcessingStats] = None,
    ):
        self.classifier = classifier
        self.ledger = ledger
        self.retry = retry
        self.stats = stats or ProcessingStats(start_time=datetime.utcnow())
        self.logger = logger.bind(service="transfer_processor")

    async def process_operation(
        self,
        operation: AccountOperation,
        use_block_time: bool = False,
    ) -> Optional[GrantOutcome]:
        """
        Process one operation.

        Args:
            operation: Raw account history entry
            use_block_time: Start the window at the payment's block time
                instead of now (historical backfill)

        Returns:
            GrantOutcome for qualifying transfers, None otherwise
        """
        self.stats.operations_seen += 1
        self.stats.last_processed_index = operation.index

        match = self.classifier.classify(operation)
        if match is None:
            return None

        self.stats.transfers_matched += 1
        self.logger.info(
            "Subscription transfer detected",
            username=match.username,
            product=match.product.name,
            amount=f"{match.event.amount} {match.event.currency_code}",
            memo=match.event.memo,
            timestamp=match.event.timestamp.isoformat()
        )

        granted_at = match.event.timestamp if use_block_time else None
        try:
            outcome = await self.retry.execute(
                lambda: self.ledger.grant_subscription(
                    match.username,
                    match.product.days,
                    granted_at=granted_at
                )
            )
        except Exception:
            self.stats.errors += 1
            raise

        if outcome.changed:
            self.stats.subscriptions_granted += 1
        else:
            self.stats.grants_skipped += 1
        return outcome
