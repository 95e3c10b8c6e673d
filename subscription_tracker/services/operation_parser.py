"""
Operation parser for Hive account history.
Turns raw history entries into AccountOperation records and transfer-shaped
operations into TransferEvent.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

import structlog

from subscription_tracker.core.config import HiveConfig
from subscription_tracker.core.exceptions import ValidationError


logger = structlog.get_logger(__name__)

HIVE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


@dataclass
class AccountOperation:
    """One entry of an account's operation history."""
    index: int
    transaction_id: str
    block_num: int
    timestamp: datetime
    op_type: str
    op_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_history_entry(cls, entry: Union[List[Any], tuple]) -> "AccountOperation":
        """
        Build from a ``get_account_history`` entry: ``[index, {trx_id, block,
        timestamp, op}]``. ``op`` is either ``[type, data]`` (condenser API) or
        ``{"type": "transfer_operation", "value": data}`` (appbase API).
        """
        try:
            index, body = entry
            op_type, op_data = _split_op(body["op"])
            return cls(
                index=int(index),
                transaction_id=body.get("trx_id", ""),
                block_num=int(body.get("block", 0)),
                timestamp=parse_timestamp(body.get("timestamp")),
                op_type=op_type,
                op_data=op_data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(
                f"Malformed account history entry: {e}",
                {"entry": str(entry)[:200]}
            ) from e


@dataclass(frozen=True)
class Amount:
    """Asset amount with its currency code."""
    value: Decimal
    currency_code: str

    def __str__(self) -> str:
        return f"{self.value:.3f} {self.currency_code}"


@dataclass
class TransferEvent:
    """A transfer-shaped operation, normalized."""
    sender: str
    recipient: str
    amount: Decimal
    currency_code: str
    memo: str
    timestamp: datetime
    operation_type: str = "transfer"
    transaction_id: Optional[str] = None
    block_num: Optional[int] = None


def _split_op(op: Any) -> tuple:
    if isinstance(op, (list, tuple)) and len(op) == 2:
        op_type, op_data = op
    elif isinstance(op, dict) and "type" in op:
        op_type, op_data = op["type"], op.get("value", {})
    else:
        raise ValueError(f"unknown operation shape: {type(op).__name__}")

    if op_type.endswith("_operation"):
        op_type = op_type[: -len("_operation")]
    return op_type, op_data or {}


def parse_timestamp(value: Union[str, datetime, None]) -> datetime:
    """Hive timestamps are UTC without offset, e.g. 2024-05-01T12:00:00."""
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if not value:
        raise ValueError("missing timestamp")
    return datetime.strptime(value[:19], HIVE_TIME_FORMAT)


def parse_amount(raw: Union[str, Dict[str, Any]]) -> Amount:
    """
    Parse ``"5.000 HBD"`` or ``{"amount": "5000", "precision": 3,
    "nai": "@@000000013"}``.
    """
    try:
        if isinstance(raw, str):
            value, currency_code = raw.strip().split()
            return Amount(Decimal(value), currency_code.upper())

        if isinstance(raw, dict):
            nai = raw["nai"]
            currency_code = HiveConfig.NAI_SYMBOLS.get(nai)
            if currency_code is None:
                raise ValidationError(f"Unknown asset identifier: {nai}", {"nai": nai})
            precision = int(raw["precision"])
            value = Decimal(int(raw["amount"])).scaleb(-precision)
            return Amount(value, currency_code)
    except (ValueError, KeyError, InvalidOperation) as e:
        raise ValidationError(f"Unparseable amount: {raw!r}", {"error": str(e)}) from e

    raise ValidationError(f"Unparseable amount: {raw!r}")


def normalize_operation(operation: AccountOperation) -> Optional[TransferEvent]:
    """TransferEvent for transfer-shaped operations, None for anything else."""
    if operation.op_type not in HiveConfig.TRANSFER_OPERATIONS:
        return None

    data = operation.op_data
    amount = parse_amount(data["amount"])
    return TransferEvent(
        sender=data["from"],
        recipient=data["to"],
        amount=amount.value,
        currency_code=amount.currency_code,
        memo=data.get("memo") or "",
        timestamp=operation.timestamp,
        operation_type=operation.op_type,
        transaction_id=operation.transaction_id,
        block_num=operation.block_num,
    )
