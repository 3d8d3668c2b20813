from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from decimal import Decimal
from typing import Protocol
from uuid import uuid4

from domain.cash import (
    CENT,
    CashAccount,
    CashTransaction,
    CashTransactionId,
    CashTransactionType,
    OperatorId,
    Reconciliation,
    YardCashSummary,
    YardId,
    parse_amount,
)
from domain.errors import ConcurrentUpdateError, InvalidAmount, LedgerIntegrityError, ValidationError
from utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

Amount = Decimal | int | float | str


class LedgerStore(Protocol):
    def get_account(self, operator_id: OperatorId) -> CashAccount | None: ...

    def list_accounts(self, yard_id: YardId | None = None) -> list[CashAccount]: ...

    def get_transaction(self, transaction_id: CashTransactionId) -> CashTransaction | None: ...

    def list_transactions(self, operator_id: OperatorId, limit: int | None = None) -> list[CashTransaction]: ...

    def latest_transaction(self, operator_id: OperatorId) -> CashTransaction | None: ...

    def save(self, account: CashAccount, transaction: CashTransaction, *, expected_version: int | None) -> None: ...


class _OperatorLocks:
    """One lock per operator, dropped once no writer holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()

    @contextmanager
    def hold(self, operator_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(operator_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[operator_id] = lock
        with lock:
            yield


class CashLedger:
    """Per-operator cash balances backed by an append-only transaction log.

    Every write goes through ``_record`` which, under a per-operator lock, reads the account,
    appends one transaction and saves both with a compare-and-swap on the account version.
    A CAS conflict (another process wrote in between) is retried from a fresh read.
    """

    def __init__(self, store: LedgerStore, *, clock: Clock = utc_now, max_write_retries: int = 3) -> None:
        if max_write_retries < 1:
            msg = "max_write_retries must be >= 1"
            raise ValueError(msg)
        self.store = store
        self.clock = clock
        self.max_write_retries = max_write_retries
        self._locks = _OperatorLocks()

    def apply_transaction(
        self,
        operator_id: str,
        operator_name: str,
        yard_id: str,
        amount: Amount,
        type: CashTransactionType | str,
        description: str,
        related_transaction_id: str | None = None,
        related_vin: str | None = None,
        recorded_by: str | None = None,
        *,
        transaction_id: CashTransactionId | None = None,
    ) -> CashTransaction:
        """Record a signed movement and return the resulting transaction.

        Negative resulting balances are allowed. ``transaction_id`` makes the call idempotent:
        if a transaction with that id is already in the log it is returned unchanged.
        """
        parsed = parse_amount(amount)
        transaction_type = _parse_type(type)
        return self._record(
            OperatorId(_required(operator_id, "operator_id")),
            operator_name,
            YardId(yard_id),
            lambda _balance: parsed,
            transaction_type=transaction_type,
            description=description,
            related_transaction_id=related_transaction_id,
            related_vin=related_vin,
            recorded_by=recorded_by or operator_name,
            transaction_id=transaction_id,
        )

    def get_balance(self, operator_id: str) -> Decimal:
        account = self.store.get_account(OperatorId(operator_id))
        if account is None:
            return Decimal("0")
        return account.current_balance

    def get_history(self, operator_id: str, limit: int | None = None) -> list[CashTransaction]:
        if limit is not None and limit < 0:
            raise ValidationError("limit must be >= 0")
        return self.store.list_transactions(OperatorId(operator_id), limit)

    def set_balance_directly(
        self,
        operator_id: str,
        operator_name: str,
        yard_id: str,
        new_balance: Amount,
        reason: str,
        set_by: str,
    ) -> CashTransaction:
        """Record an adjustment of ``new_balance - current``.

        Always leaves an audit entry: confirming the current balance records a zero adjustment.
        """
        target = parse_amount(new_balance, allow_zero=True)

        return self._record(
            OperatorId(_required(operator_id, "operator_id")),
            operator_name,
            YardId(yard_id),
            lambda balance: target - balance,
            transaction_type=CashTransactionType.ADJUSTMENT,
            description=f"Balance set to ${target:.2f}: {reason}",
            recorded_by=set_by,
        )

    def record_vehicle_purchase(
        self,
        operator_id: str,
        operator_name: str,
        yard_id: str,
        purchase_amount: Amount,
        vin: str,
        transaction_id: str,
    ) -> CashTransaction:
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            -_positive(purchase_amount),
            CashTransactionType.PURCHASE,
            f"Vehicle purchase - VIN: {vin}",
            transaction_id,
            vin,
            operator_name,
        )

    def record_vehicle_sale(
        self,
        operator_id: str,
        operator_name: str,
        yard_id: str,
        actual_amount: Amount,
        vin: str,
        sale_id: str,
    ) -> CashTransaction:
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            _positive(actual_amount),
            CashTransactionType.SALE,
            f"Vehicle sale - VIN: {vin}",
            sale_id,
            vin,
            operator_name,
        )

    def update_vehicle_sale_actual(
        self,
        operator_id: str,
        operator_name: str,
        yard_id: str,
        estimated_amount: Amount,
        actual_amount: Amount,
        vin: str,
        sale_id: str,
    ) -> CashTransaction | None:
        """Book the difference between what a sale was expected to bring in and what it did."""
        difference = parse_amount(actual_amount, allow_zero=True) - parse_amount(estimated_amount, allow_zero=True)
        if difference == 0:
            return None

        if difference > 0:
            description = f"Vehicle sale adjustment - VIN: {vin} (received ${difference:.2f} more than estimated)"
        else:
            description = f"Vehicle sale adjustment - VIN: {vin} (received ${abs(difference):.2f} less than estimated)"
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            difference,
            CashTransactionType.ADJUSTMENT,
            description,
            sale_id,
            vin,
            operator_name,
        )

    def adjust(
        self, operator_id: str, operator_name: str, yard_id: str, amount: Amount, reason: str, adjusted_by: str
    ) -> CashTransaction:
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            amount,
            CashTransactionType.ADJUSTMENT,
            f"Manual adjustment: {reason}",
            recorded_by=adjusted_by,
        )

    def record_deposit(
        self, operator_id: str, operator_name: str, yard_id: str, amount: Amount, deposited_by: str
    ) -> CashTransaction:
        deposit = _positive(amount)
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            deposit,
            CashTransactionType.DEPOSIT,
            f"Cash deposit of ${deposit:.2f}",
            recorded_by=deposited_by,
        )

    def record_withdrawal(
        self, operator_id: str, operator_name: str, yard_id: str, amount: Amount, withdrawn_by: str
    ) -> CashTransaction:
        withdrawal = _positive(amount)
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            -withdrawal,
            CashTransactionType.WITHDRAWAL,
            f"Cash withdrawal of ${withdrawal:.2f}",
            recorded_by=withdrawn_by,
        )

    def record_expense_deduction(
        self,
        operator_id: str,
        operator_name: str,
        yard_id: str,
        expense_amount: Amount,
        expense_description: str,
        expense_id: str,
    ) -> CashTransaction:
        return self.apply_transaction(
            operator_id,
            operator_name,
            yard_id,
            -_positive(expense_amount),
            CashTransactionType.WITHDRAWAL,
            f"Expense: {expense_description}",
            expense_id,
            None,
            "System",
        )

    def list_accounts(self, yard_id: str | None = None) -> list[CashAccount]:
        return self.store.list_accounts(YardId(yard_id) if yard_id is not None else None)

    def yard_summary(self, yard_id: str) -> YardCashSummary:
        accounts = self.store.list_accounts(YardId(yard_id))
        total = sum((account.current_balance for account in accounts), start=Decimal("0"))
        average = (total / len(accounts)).quantize(CENT) if accounts else Decimal("0")
        return YardCashSummary(
            yard_id=YardId(yard_id),
            total_cash=total,
            account_count=len(accounts),
            average_cash=average,
            accounts=accounts,
        )

    def reconcile(self, operator_id: str) -> Reconciliation:
        """Compare the cached balance with the sum of the log. Never corrects anything."""
        history = self.store.list_transactions(OperatorId(operator_id))
        reconciliation = Reconciliation(
            operator_id=OperatorId(operator_id),
            cached_balance=self.get_balance(operator_id),
            derived_balance=_sum_amounts(history),
            transaction_count=len(history),
        )
        if not reconciliation.is_consistent:
            logger.warning(
                "Ledger mismatch operator=%s cached=%s derived=%s transactions=%d",
                operator_id,
                reconciliation.cached_balance,
                reconciliation.derived_balance,
                reconciliation.transaction_count,
            )
        return reconciliation

    def assert_consistent(self, operator_id: str) -> None:
        reconciliation = self.reconcile(operator_id)
        if not reconciliation.is_consistent:
            raise LedgerIntegrityError(
                operator_id=reconciliation.operator_id,
                cached_balance=reconciliation.cached_balance,
                derived_balance=reconciliation.derived_balance,
            )

    def _record(
        self,
        operator_id: OperatorId,
        operator_name: str,
        yard_id: YardId,
        amount_for: Callable[[Decimal], Decimal],
        *,
        transaction_type: CashTransactionType,
        description: str,
        recorded_by: str,
        related_transaction_id: str | None = None,
        related_vin: str | None = None,
        transaction_id: CashTransactionId | None = None,
    ) -> CashTransaction:
        with self._locks.hold(operator_id):
            if transaction_id is not None:
                existing = self._replayed(operator_id, transaction_id)
                if existing is not None:
                    return existing

            attempt = 0
            while True:
                attempt += 1
                account = self.store.get_account(operator_id)
                base_balance = self._trusted_balance(operator_id, account)
                amount = amount_for(base_balance)
                now = self.clock()
                transaction = CashTransaction(
                    id=transaction_id or CashTransactionId(uuid4()),
                    operator_id=operator_id,
                    operator_name=operator_name,
                    yard_id=yard_id,
                    type=transaction_type,
                    amount=amount,
                    balance_after=base_balance + amount,
                    related_transaction_id=related_transaction_id,
                    related_vin=related_vin,
                    description=description,
                    timestamp=now,
                    recorded_by=recorded_by,
                )
                updated = CashAccount(
                    operator_id=operator_id,
                    operator_name=account.operator_name if account else operator_name,
                    yard_id=account.yard_id if account else yard_id,
                    current_balance=transaction.balance_after,
                    last_updated=now,
                    version=(account.version if account else 0) + 1,
                )
                try:
                    self.store.save(updated, transaction, expected_version=account.version if account else None)
                except ConcurrentUpdateError:
                    if transaction_id is not None:
                        existing = self._replayed(operator_id, transaction_id)
                        if existing is not None:
                            return existing
                    if attempt >= self.max_write_retries:
                        raise
                    logger.warning(
                        "Concurrent cash write for operator=%s; retrying (%d/%d)",
                        operator_id,
                        attempt,
                        self.max_write_retries,
                    )
                    continue

                logger.info(
                    "Recorded %s of %s for operator=%s balance=%s",
                    transaction_type,
                    amount,
                    operator_id,
                    transaction.balance_after,
                )
                return transaction

    def _replayed(self, operator_id: OperatorId, transaction_id: CashTransactionId) -> CashTransaction | None:
        existing = self.store.get_transaction(transaction_id)
        if existing is None:
            return None
        if existing.operator_id != operator_id:
            raise ValidationError(
                f"Transaction id {transaction_id} already belongs to operator={existing.operator_id}"
            )
        logger.info("Cash transaction %s already recorded; skipping replay", transaction_id)
        return existing

    def _trusted_balance(self, operator_id: OperatorId, account: CashAccount | None) -> Decimal:
        """The balance to build the next write on.

        Normally the cached account balance. If it disagrees with the last logged ``balance_after``
        the log is summed instead and the mismatch is logged for reconciliation.
        """
        cached = account.current_balance if account else Decimal("0")
        latest = self.store.latest_transaction(operator_id)
        logged = latest.balance_after if latest is not None else Decimal("0")
        if cached == logged:
            return cached

        fresh = self.store.get_account(operator_id)
        if _version(fresh) != _version(account):
            # Another writer got in between the two reads; the save will fail its version check.
            return cached

        derived = _sum_amounts(self.store.list_transactions(operator_id))
        logger.error(
            "Cached balance for operator=%s is %s but the log says %s (sum of log %s); writing from the log",
            operator_id,
            cached,
            logged,
            derived,
        )
        return derived


def _version(account: CashAccount | None) -> int | None:
    return account.version if account is not None else None


def _sum_amounts(transactions: list[CashTransaction]) -> Decimal:
    return sum((transaction.amount for transaction in transactions), start=Decimal("0"))


def _positive(value: Amount) -> Decimal:
    amount = parse_amount(value)
    if amount < 0:
        raise InvalidAmount(f"Amount {value!r} must be positive", amount=value)
    return amount


def _parse_type(value: CashTransactionType | str) -> CashTransactionType:
    try:
        return CashTransactionType(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown cash transaction type {value!r}") from exc


def _required(value: str, field: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")
    return value
