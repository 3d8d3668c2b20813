from __future__ import annotations

from decimal import Decimal
from uuid import UUID


class ValidationError(ValueError):
    """Input rejected before any state was touched."""


class InvalidAmount(ValidationError):
    def __init__(self, message: str, *, amount: object = None) -> None:
        super().__init__(message)
        self.amount = amount


class InvalidPayload(ValidationError):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class DuplicateVehicleReport(ValidationError):
    def __init__(self, *, vin: str, existing_transaction_id: str, transaction_id: str) -> None:
        self.vin = vin
        self.existing_transaction_id = existing_transaction_id
        self.transaction_id = transaction_id
        message = (
            f"VIN {vin} already has a purchase report for transaction={existing_transaction_id}; "
            f"refusing to schedule another for transaction={transaction_id}"
        )
        super().__init__(message)


class PersistenceError(RuntimeError):
    """The store could not complete the operation; nothing was committed."""


class ConcurrentUpdateError(PersistenceError):
    def __init__(self, *, operator_id: str, expected_version: int | None) -> None:
        self.operator_id = operator_id
        self.expected_version = expected_version
        super().__init__(
            f"Cash account for operator={operator_id} changed concurrently (expected_version={expected_version})"
        )


class LedgerIntegrityError(RuntimeError):
    def __init__(self, *, operator_id: str, cached_balance: Decimal, derived_balance: Decimal) -> None:
        self.operator_id = operator_id
        self.cached_balance = cached_balance
        self.derived_balance = derived_balance
        super().__init__(
            f"Balance mismatch for operator={operator_id} cached={cached_balance} derived={derived_balance}"
        )


class ReportNotFound(LookupError):
    def __init__(self, report_id: UUID) -> None:
        self.report_id = report_id
        super().__init__(f"Scheduled report {report_id} not found")


class ReportNotRetryable(ValueError):
    def __init__(self, report_id: UUID, status: str) -> None:
        self.report_id = report_id
        self.status = status
        super().__init__(f"Scheduled report {report_id} is {status}; only failed reports can be retried")
