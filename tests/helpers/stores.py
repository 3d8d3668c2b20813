from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from domain.cash import CashAccount, CashTransaction, CashTransactionId, OperatorId, YardId
from domain.errors import ConcurrentUpdateError
from domain.offline import OfflineQueueEntry, QueuedWriteKind
from services.cash_ledger import LedgerStore


class DelegatingLedgerStore:
    def __init__(self, inner: LedgerStore) -> None:
        self.inner = inner

    def get_account(self, operator_id: OperatorId) -> CashAccount | None:
        return self.inner.get_account(operator_id)

    def list_accounts(self, yard_id: YardId | None = None) -> list[CashAccount]:
        return self.inner.list_accounts(yard_id)

    def get_transaction(self, transaction_id: CashTransactionId) -> CashTransaction | None:
        return self.inner.get_transaction(transaction_id)

    def list_transactions(self, operator_id: OperatorId, limit: int | None = None) -> list[CashTransaction]:
        return self.inner.list_transactions(operator_id, limit)

    def latest_transaction(self, operator_id: OperatorId) -> CashTransaction | None:
        return self.inner.latest_transaction(operator_id)

    def save(self, account: CashAccount, transaction: CashTransaction, *, expected_version: int | None) -> None:
        self.inner.save(account, transaction, expected_version=expected_version)


class GatedLedgerStore(DelegatingLedgerStore):
    """Parks the first account read until ``release`` is set, to hold a writer mid read-modify-write."""

    def __init__(self, inner: LedgerStore) -> None:
        super().__init__(inner)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.reads = 0
        self._gate_open = False

    def get_account(self, operator_id: OperatorId) -> CashAccount | None:
        account = super().get_account(operator_id)
        self.reads += 1
        if not self._gate_open:
            self._gate_open = True
            self.entered.set()
            self.release.wait(timeout=5)
        return account


class InterleavingLedgerStore(DelegatingLedgerStore):
    """Runs ``interleave`` right after the first account read, before this writer saves."""

    def __init__(self, inner: LedgerStore, interleave: Callable[[], object]) -> None:
        super().__init__(inner)
        self.interleave: Callable[[], object] | None = interleave
        self.saves = 0

    def get_account(self, operator_id: OperatorId) -> CashAccount | None:
        account = super().get_account(operator_id)
        if self.interleave is not None:
            interleave, self.interleave = self.interleave, None
            interleave()
        return account

    def save(self, account: CashAccount, transaction: CashTransaction, *, expected_version: int | None) -> None:
        self.saves += 1
        super().save(account, transaction, expected_version=expected_version)


class AlwaysConflictingLedgerStore(DelegatingLedgerStore):
    def __init__(self, inner: LedgerStore) -> None:
        super().__init__(inner)
        self.saves = 0

    def save(self, account: CashAccount, transaction: CashTransaction, *, expected_version: int | None) -> None:
        self.saves += 1
        raise ConcurrentUpdateError(operator_id=account.operator_id, expected_version=expected_version)


class RecordingSink:
    """Write sink that records applied entries and fails on the entries it is told to."""

    def __init__(self, fail_on: set[int] | None = None) -> None:
        self.applied: list[OfflineQueueEntry] = []
        self.fail_on = fail_on or set()
        self.calls = 0

    def validate(self, kind: QueuedWriteKind, payload: dict[str, Any]) -> dict[str, Any]:
        return dict(payload)

    def apply(self, entry: OfflineQueueEntry) -> None:
        self.calls += 1
        if self.calls in self.fail_on:
            raise ConnectionError(f"sink unavailable on call {self.calls}")
        self.applied.append(entry)
