from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from domain.cash import CashTransactionType

QueueEntryId = NewType("QueueEntryId", UUID)


class QueuedWriteKind(StrEnum):
    CASH_TRANSACTION = "cash_transaction"


class OfflineQueueEntry(BaseModel):
    # Assigned by the store; defines replay order.
    sequence: int | None = None
    entry_id: QueueEntryId = QueueEntryId(Field(default_factory=uuid4))
    kind: QueuedWriteKind
    payload: dict[str, Any]
    queued_at: datetime
    # Set when the sink rejected the entry as invalid; it is kept but no longer replayed.
    dead_lettered_at: datetime | None = None
    last_error: str | None = None


class QueuedCashTransaction(BaseModel):
    operator_id: str
    operator_name: str
    yard_id: str
    amount: Decimal
    type: CashTransactionType
    description: str
    related_transaction_id: str | None = None
    related_vin: str | None = None
    recorded_by: str | None = None
