from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

import pydantic
from pydantic import BaseModel

from domain.cash import CashTransactionId, parse_amount
from domain.errors import InvalidPayload, ValidationError
from domain.offline import OfflineQueueEntry, QueueEntryId, QueuedCashTransaction, QueuedWriteKind
from services.cash_ledger import CashLedger
from services.connectivity import ConnectivityMonitor
from utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class OfflineQueueStore(Protocol):
    def append(self, entry: OfflineQueueEntry) -> OfflineQueueEntry: ...

    def list(self) -> list[OfflineQueueEntry]: ...

    def list_dead_letters(self) -> list[OfflineQueueEntry]: ...

    def dead_letter(self, entry_id: QueueEntryId, *, reason: str, when: datetime) -> None: ...

    def remove(self, entry_id: QueueEntryId) -> None: ...

    def count(self) -> int: ...


class WriteSink(Protocol):
    def validate(self, kind: QueuedWriteKind, payload: dict[str, Any]) -> dict[str, Any]: ...

    def apply(self, entry: OfflineQueueEntry) -> None: ...


class LedgerWriteSink(WriteSink):
    """Applies queued cash writes to the ledger, keyed by the entry id so a replay is a no-op."""

    def __init__(self, ledger: CashLedger) -> None:
        self.ledger = ledger

    def validate(self, kind: QueuedWriteKind, payload: dict[str, Any]) -> dict[str, Any]:
        return _parse_cash_write(kind, payload).model_dump(mode="json")

    def apply(self, entry: OfflineQueueEntry) -> None:
        write = _parse_cash_write(entry.kind, entry.payload)
        self.ledger.apply_transaction(
            write.operator_id,
            write.operator_name,
            write.yard_id,
            write.amount,
            write.type,
            write.description,
            write.related_transaction_id,
            write.related_vin,
            write.recorded_by,
            transaction_id=CashTransactionId(entry.entry_id),
        )


class OfflineReplayQueue:
    """Buffers writes made while offline and replays them in enqueue order once back online.

    Writes are validated by the sink before they are queued. An entry leaves the queue only
    after the sink applied it. An entry the sink still rejects as invalid on replay is moved
    to the dead letters and the flush carries on; any other failure stops the flush and is
    re-raised, leaving that entry and every later one queued.
    """

    def __init__(
        self,
        store: OfflineQueueStore,
        sink: WriteSink,
        *,
        monitor: ConnectivityMonitor | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.sink = sink
        self.monitor = monitor or ConnectivityMonitor()
        self.clock = clock
        self._flush_lock = threading.Lock()
        self.monitor.subscribe(self._on_connectivity_change)

    @property
    def depth(self) -> int:
        return self.store.count()

    def dead_letters(self) -> list[OfflineQueueEntry]:
        return self.store.list_dead_letters()

    def enqueue(self, kind: QueuedWriteKind, payload: Mapping[str, Any] | BaseModel) -> OfflineQueueEntry:
        validated = self.sink.validate(kind, _as_json_payload(payload))
        entry = self.store.append(OfflineQueueEntry(kind=kind, payload=validated, queued_at=self.clock()))
        logger.info("Queued offline %s entry=%s sequence=%s", kind, entry.entry_id, entry.sequence)
        return entry

    def submit(self, kind: QueuedWriteKind, payload: Mapping[str, Any] | BaseModel) -> bool:
        """Apply the write now when online, queue it otherwise. Returns True when it was queued.

        Invalid writes raise ``ValidationError`` either way.
        """
        if not self.monitor.is_online:
            self.enqueue(kind, payload)
            return True

        validated = self.sink.validate(kind, _as_json_payload(payload))
        self.sink.apply(OfflineQueueEntry(kind=kind, payload=validated, queued_at=self.clock()))
        return False

    def flush(self) -> int:
        """Replay queued entries in order. Returns the number applied."""
        if not self.monitor.is_online:
            logger.info("Offline; not flushing %d queued entries", self.depth)
            return 0

        applied = 0
        with self._flush_lock:
            for entry in self.store.list():
                if not self.monitor.is_online:
                    logger.info("Went offline during flush; %d entries applied so far", applied)
                    break
                try:
                    self.sink.apply(entry)
                except ValidationError as exc:
                    self.store.dead_letter(entry.entry_id, reason=str(exc), when=self.clock())
                    logger.warning(
                        "Offline entry=%s sequence=%s rejected on replay and dead-lettered: %s",
                        entry.entry_id,
                        entry.sequence,
                        exc,
                    )
                    continue
                except Exception:
                    logger.error(
                        "Replay of offline entry=%s sequence=%s failed; stopping flush after %d applied",
                        entry.entry_id,
                        entry.sequence,
                        applied,
                    )
                    raise
                self.store.remove(entry.entry_id)
                applied += 1

        if applied:
            logger.info("Flushed %d offline entries; %d remain", applied, self.depth)
        return applied

    def _on_connectivity_change(self, online: bool) -> None:
        if not online:
            return
        try:
            self.flush()
        except Exception:
            logger.exception("Automatic flush failed; %d entries remain queued", self.depth)


def _parse_cash_write(kind: QueuedWriteKind, payload: Mapping[str, Any]) -> QueuedCashTransaction:
    if kind != QueuedWriteKind.CASH_TRANSACTION:
        raise InvalidPayload(f"Unsupported offline entry kind: {kind}", field="kind")
    try:
        write = QueuedCashTransaction.model_validate(dict(payload))
    except pydantic.ValidationError as exc:
        error = exc.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else None
        raise InvalidPayload(f"{field or 'payload'}: {error['msg']}", field=field) from exc
    if not write.operator_id.strip():
        raise InvalidPayload("operator_id is required", field="operator_id")
    return write.model_copy(update={"amount": parse_amount(write.amount)})


def _as_json_payload(payload: Mapping[str, Any] | BaseModel) -> dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)
