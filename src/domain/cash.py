from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from domain.errors import InvalidAmount

OperatorId = NewType("OperatorId", str)
YardId = NewType("YardId", str)
CashTransactionId = NewType("CashTransactionId", UUID)

CENT = Decimal("0.01")


class CashTransactionType(StrEnum):
    PURCHASE = "purchase"
    SALE = "sale"
    ADJUSTMENT = "adjustment"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class CashAccount(BaseModel):
    """Cached running balance of one operator.

    ``version`` is bumped on every write and used as the compare-and-swap token by stores.
    """

    operator_id: OperatorId
    operator_name: str
    yard_id: YardId
    current_balance: Decimal = Decimal("0")
    last_updated: datetime
    version: int = 0


class CashTransaction(BaseModel):
    """A single signed cash movement.

    Amount sign convention:
    - Positive amount is cash received by the operator.
    - Negative amount is cash paid out by the operator.
    """

    model_config = ConfigDict(frozen=True)

    id: CashTransactionId = CashTransactionId(Field(default_factory=uuid4))
    operator_id: OperatorId
    operator_name: str
    yard_id: YardId
    type: CashTransactionType
    amount: Decimal
    balance_after: Decimal
    related_transaction_id: str | None = None
    related_vin: str | None = None
    description: str
    timestamp: datetime
    recorded_by: str

    @model_validator(mode="after")
    def _validate_amount(self) -> CashTransaction:
        # A balance set that confirms the current balance is still recorded as a zero adjustment.
        if self.amount == 0 and self.type != CashTransactionType.ADJUSTMENT:
            raise ValueError("CashTransaction.amount must be non-zero")
        return self


class Reconciliation(BaseModel):
    operator_id: OperatorId
    cached_balance: Decimal
    derived_balance: Decimal
    transaction_count: int

    @property
    def discrepancy(self) -> Decimal:
        return self.cached_balance - self.derived_balance

    @property
    def is_consistent(self) -> bool:
        return self.discrepancy == 0


class YardCashSummary(BaseModel):
    yard_id: YardId
    total_cash: Decimal
    account_count: int
    average_cash: Decimal
    accounts: list[CashAccount]


def parse_amount(value: object, *, allow_zero: bool = False) -> Decimal:
    """Coerce ``value`` to a cent-precision Decimal or raise InvalidAmount.

    Zero is rejected unless ``allow_zero``; every ledger write path uses the same policy.
    """
    if isinstance(value, bool) or not isinstance(value, (Decimal, int, float, str)):
        raise InvalidAmount(f"Amount must be a number, got {type(value).__name__}", amount=value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidAmount(f"Amount {value!r} is not a number", amount=value) from exc

    if not amount.is_finite():
        raise InvalidAmount(f"Amount {value!r} is not finite", amount=value)
    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation as exc:
        raise InvalidAmount(f"Amount {value!r} is out of range", amount=value) from exc
    if amount != quantized:
        raise InvalidAmount(f"Amount {value!r} has more than two decimal places", amount=value)
    if quantized == 0 and not allow_zero:
        raise InvalidAmount("Amount must be non-zero", amount=value)
    return quantized
