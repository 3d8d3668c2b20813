from __future__ import annotations

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db import models
from domain.cash import CashAccount, CashTransaction, CashTransactionId, CashTransactionType, OperatorId, YardId
from domain.compliance import (
    FailureKind,
    ManualSubmission,
    ManualSubmissionStatus,
    NmvtisReport,
    ReportKind,
    ReportStatus,
    ScheduledReport,
    ScheduledReportId,
    VehicleReportData,
)
from domain.errors import ConcurrentUpdateError, PersistenceError
from domain.offline import OfflineQueueEntry, QueueEntryId, QueuedWriteKind


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _as_utc_or_none(value: datetime | None) -> datetime | None:
    return _as_utc(value) if value is not None else None


class CashLedgerRepository:
    """Cash accounts and their transaction log.

    ``save`` writes the account and the new transaction in one DB transaction and only
    succeeds if the account still carries ``expected_version`` (None means "must not exist").
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_account(self, operator_id: OperatorId) -> CashAccount | None:
        with self._session_factory() as session:
            orm_account = session.get(models.CashAccountOrm, str(operator_id))
            if orm_account is None:
                return None
            return self._account_to_domain(orm_account)

    def list_accounts(self, yard_id: YardId | None = None) -> list[CashAccount]:
        stmt = select(models.CashAccountOrm).order_by(models.CashAccountOrm.last_updated.desc())
        if yard_id is not None:
            stmt = stmt.where(models.CashAccountOrm.yard_id == str(yard_id))
        with self._session_factory() as session:
            return [self._account_to_domain(row) for row in session.scalars(stmt).all()]

    def get_transaction(self, transaction_id: CashTransactionId) -> CashTransaction | None:
        stmt = select(models.CashTransactionOrm).where(models.CashTransactionOrm.id == transaction_id)
        with self._session_factory() as session:
            orm_transaction = session.scalars(stmt).one_or_none()
            if orm_transaction is None:
                return None
            return self._transaction_to_domain(orm_transaction)

    def list_transactions(self, operator_id: OperatorId, limit: int | None = None) -> list[CashTransaction]:
        stmt = (
            select(models.CashTransactionOrm)
            .where(models.CashTransactionOrm.operator_id == str(operator_id))
            .order_by(models.CashTransactionOrm.timestamp.desc(), models.CashTransactionOrm.seq.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [self._transaction_to_domain(row) for row in session.scalars(stmt).all()]

    def latest_transaction(self, operator_id: OperatorId) -> CashTransaction | None:
        """The last transaction written for the operator, by insertion order rather than timestamp."""
        stmt = (
            select(models.CashTransactionOrm)
            .where(models.CashTransactionOrm.operator_id == str(operator_id))
            .order_by(models.CashTransactionOrm.seq.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            orm_transaction = session.scalars(stmt).one_or_none()
            if orm_transaction is None:
                return None
            return self._transaction_to_domain(orm_transaction)

    def save(self, account: CashAccount, transaction: CashTransaction, *, expected_version: int | None) -> None:
        try:
            with self._session_factory.begin() as session:
                if expected_version is None:
                    session.add(
                        models.CashAccountOrm(
                            operator_id=str(account.operator_id),
                            operator_name=account.operator_name,
                            yard_id=str(account.yard_id),
                            current_balance=account.current_balance,
                            last_updated=_as_utc(account.last_updated),
                            version=account.version,
                        )
                    )
                    session.flush()
                else:
                    stmt = (
                        update(models.CashAccountOrm)
                        .where(
                            models.CashAccountOrm.operator_id == str(account.operator_id),
                            models.CashAccountOrm.version == expected_version,
                        )
                        .values(
                            operator_name=account.operator_name,
                            yard_id=str(account.yard_id),
                            current_balance=account.current_balance,
                            last_updated=_as_utc(account.last_updated),
                            version=account.version,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = session.execute(stmt)
                    if result.rowcount != 1:
                        raise ConcurrentUpdateError(operator_id=account.operator_id, expected_version=expected_version)
                session.add(self._transaction_to_orm(transaction))
        except IntegrityError as exc:
            raise ConcurrentUpdateError(operator_id=account.operator_id, expected_version=expected_version) from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to save cash transaction {transaction.id}") from exc

    @staticmethod
    def _transaction_to_orm(transaction: CashTransaction) -> models.CashTransactionOrm:
        return models.CashTransactionOrm(
            id=transaction.id,
            operator_id=str(transaction.operator_id),
            operator_name=transaction.operator_name,
            yard_id=str(transaction.yard_id),
            type=transaction.type.value,
            amount=transaction.amount,
            balance_after=transaction.balance_after,
            related_transaction_id=transaction.related_transaction_id,
            related_vin=transaction.related_vin,
            description=transaction.description,
            timestamp=_as_utc(transaction.timestamp),
            recorded_by=transaction.recorded_by,
        )

    @staticmethod
    def _account_to_domain(orm_account: models.CashAccountOrm) -> CashAccount:
        return CashAccount(
            operator_id=OperatorId(orm_account.operator_id),
            operator_name=orm_account.operator_name,
            yard_id=YardId(orm_account.yard_id),
            current_balance=orm_account.current_balance,
            last_updated=_as_utc(orm_account.last_updated),
            version=orm_account.version,
        )

    @staticmethod
    def _transaction_to_domain(orm_transaction: models.CashTransactionOrm) -> CashTransaction:
        return CashTransaction(
            id=CashTransactionId(orm_transaction.id),
            operator_id=OperatorId(orm_transaction.operator_id),
            operator_name=orm_transaction.operator_name,
            yard_id=YardId(orm_transaction.yard_id),
            type=CashTransactionType(orm_transaction.type),
            amount=orm_transaction.amount,
            balance_after=orm_transaction.balance_after,
            related_transaction_id=orm_transaction.related_transaction_id,
            related_vin=orm_transaction.related_vin,
            description=orm_transaction.description,
            timestamp=_as_utc(orm_transaction.timestamp),
            recorded_by=orm_transaction.recorded_by,
        )


class ScheduledReportRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def add(self, report: ScheduledReport) -> tuple[ScheduledReport, bool]:
        """Insert ``report`` unless one already exists for its (transaction, kind).

        Returns the stored report and whether it was created by this call.
        """
        try:
            with self._session_factory.begin() as session:
                session.add(
                    models.ScheduledReportOrm(
                        id=report.id,
                        vin=report.vin,
                        report_kind=report.report_kind.value,
                        schedule_at=_as_utc(report.schedule_at),
                        payload=report.payload.model_dump_json(),
                        originating_transaction_id=report.originating_transaction_id,
                        status=report.status.value,
                        attempt_count=report.attempt_count,
                        last_attempt_at=_as_utc_or_none(report.last_attempt_at),
                        last_error=report.last_error,
                        failure_kind=report.failure_kind.value if report.failure_kind else None,
                        gateway_report_id=report.gateway_report_id,
                        created_at=_as_utc(report.created_at),
                    )
                )
        except IntegrityError:
            existing = self.get_by_origin(report.originating_transaction_id, report.report_kind)
            if existing is None:
                raise PersistenceError(f"Failed to store scheduled report {report.id}") from None
            return existing, False
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to store scheduled report {report.id}") from exc
        return report, True

    def get(self, report_id: ScheduledReportId) -> ScheduledReport | None:
        with self._session_factory() as session:
            orm_report = session.get(models.ScheduledReportOrm, report_id)
            if orm_report is None:
                return None
            return self._to_domain(orm_report)

    def get_by_origin(self, transaction_id: str, kind: ReportKind) -> ScheduledReport | None:
        stmt = select(models.ScheduledReportOrm).where(
            models.ScheduledReportOrm.originating_transaction_id == transaction_id,
            models.ScheduledReportOrm.report_kind == kind.value,
        )
        with self._session_factory() as session:
            orm_report = session.scalars(stmt).one_or_none()
            if orm_report is None:
                return None
            return self._to_domain(orm_report)

    def find_by_vin(self, vin: str, kind: ReportKind) -> list[ScheduledReport]:
        stmt = (
            select(models.ScheduledReportOrm)
            .where(models.ScheduledReportOrm.vin == vin, models.ScheduledReportOrm.report_kind == kind.value)
            .order_by(models.ScheduledReportOrm.created_at.asc())
        )
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def list(self, status: ReportStatus | None = None) -> list[ScheduledReport]:
        stmt = select(models.ScheduledReportOrm).order_by(models.ScheduledReportOrm.schedule_at.asc())
        if status is not None:
            stmt = stmt.where(models.ScheduledReportOrm.status == status.value)
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def list_due(
        self, now: datetime, *, stale_claim_before: datetime, limit: int | None = None
    ) -> list[ScheduledReport]:
        """Scheduled reports that are due and not currently claimed by another scan."""
        table = models.ScheduledReportOrm
        stmt = (
            select(table)
            .where(
                table.status == ReportStatus.SCHEDULED.value,
                table.schedule_at <= _as_utc(now),
                (table.last_attempt_at.is_(None)) | (table.last_attempt_at <= _as_utc(stale_claim_before)),
            )
            .order_by(table.schedule_at.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def list_failed(self, failure_kind: FailureKind, *, max_attempts: int) -> list[ScheduledReport]:
        table = models.ScheduledReportOrm
        stmt = (
            select(table)
            .where(
                table.status == ReportStatus.FAILED.value,
                table.failure_kind == failure_kind.value,
                table.attempt_count < max_attempts,
            )
            .order_by(table.last_attempt_at.asc())
        )
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def count(self, status: ReportStatus) -> int:
        stmt = select(func.count()).select_from(models.ScheduledReportOrm).where(
            models.ScheduledReportOrm.status == status.value
        )
        with self._session_factory() as session:
            return int(session.scalar(stmt) or 0)

    def claim(
        self,
        report_id: ScheduledReportId,
        *,
        expected_status: ReportStatus,
        expected_attempts: int,
        now: datetime,
    ) -> ScheduledReport | None:
        """Count an attempt against the report if nobody else did since it was read.

        Returns the claimed report, or None when another caller got there first.
        """
        table = models.ScheduledReportOrm
        stmt = (
            update(table)
            .where(
                table.id == report_id,
                table.status == expected_status.value,
                table.attempt_count == expected_attempts,
            )
            .values(attempt_count=expected_attempts + 1, last_attempt_at=_as_utc(now))
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory.begin() as session:
                result = session.execute(stmt)
                if result.rowcount != 1:
                    return None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to claim scheduled report {report_id}") from exc
        return self.get(report_id)

    def record_outcome(
        self,
        report_id: ScheduledReportId,
        *,
        status: ReportStatus,
        last_error: str | None,
        failure_kind: FailureKind | None,
        gateway_report_id: str | None,
    ) -> ScheduledReport:
        values: dict[str, object] = {
            "status": status.value,
            "last_error": last_error,
            "failure_kind": failure_kind.value if failure_kind else None,
        }
        if gateway_report_id is not None:
            values["gateway_report_id"] = gateway_report_id
        return self._update(report_id, values)

    def update_payload(self, report_id: ScheduledReportId, payload: VehicleReportData) -> ScheduledReport:
        return self._update(report_id, {"payload": payload.model_dump_json(), "vin": payload.vin})

    def _update(self, report_id: ScheduledReportId, values: dict[str, object]) -> ScheduledReport:
        stmt = (
            update(models.ScheduledReportOrm)
            .where(models.ScheduledReportOrm.id == report_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory.begin() as session:
                session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to update scheduled report {report_id}") from exc
        updated = self.get(report_id)
        if updated is None:
            raise PersistenceError(f"Scheduled report {report_id} disappeared during update")
        return updated

    @staticmethod
    def _to_domain(orm_report: models.ScheduledReportOrm) -> ScheduledReport:
        return ScheduledReport(
            id=ScheduledReportId(orm_report.id),
            vin=orm_report.vin,
            report_kind=ReportKind(orm_report.report_kind),
            schedule_at=_as_utc(orm_report.schedule_at),
            payload=VehicleReportData.model_validate_json(orm_report.payload),
            originating_transaction_id=orm_report.originating_transaction_id,
            status=ReportStatus(orm_report.status),
            attempt_count=orm_report.attempt_count,
            last_attempt_at=_as_utc_or_none(orm_report.last_attempt_at),
            last_error=orm_report.last_error,
            failure_kind=FailureKind(orm_report.failure_kind) if orm_report.failure_kind else None,
            gateway_report_id=orm_report.gateway_report_id,
            created_at=_as_utc(orm_report.created_at),
        )


class OfflineQueueRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def append(self, entry: OfflineQueueEntry) -> OfflineQueueEntry:
        orm_entry = models.OfflineQueueEntryOrm(
            entry_id=entry.entry_id,
            kind=entry.kind.value,
            payload=json.dumps(entry.payload),
            queued_at=_as_utc(entry.queued_at),
        )
        try:
            with self._session_factory.begin() as session:
                session.add(orm_entry)
                session.flush()
                sequence = orm_entry.sequence
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to queue offline entry {entry.entry_id}") from exc
        return entry.model_copy(update={"sequence": sequence})

    def list(self) -> list[OfflineQueueEntry]:
        stmt = (
            select(models.OfflineQueueEntryOrm)
            .where(models.OfflineQueueEntryOrm.dead_lettered_at.is_(None))
            .order_by(models.OfflineQueueEntryOrm.sequence.asc())
        )
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def list_dead_letters(self) -> list[OfflineQueueEntry]:
        stmt = (
            select(models.OfflineQueueEntryOrm)
            .where(models.OfflineQueueEntryOrm.dead_lettered_at.is_not(None))
            .order_by(models.OfflineQueueEntryOrm.sequence.asc())
        )
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def dead_letter(self, entry_id: QueueEntryId, *, reason: str, when: datetime) -> None:
        stmt = (
            update(models.OfflineQueueEntryOrm)
            .where(models.OfflineQueueEntryOrm.entry_id == entry_id)
            .values(dead_lettered_at=_as_utc(when), last_error=reason)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory.begin() as session:
                session.execute(stmt)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to dead-letter offline entry {entry_id}") from exc

    def remove(self, entry_id: QueueEntryId) -> None:
        stmt = select(models.OfflineQueueEntryOrm).where(models.OfflineQueueEntryOrm.entry_id == entry_id)
        try:
            with self._session_factory.begin() as session:
                orm_entry = session.scalars(stmt).one_or_none()
                if orm_entry is not None:
                    session.delete(orm_entry)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to remove offline entry {entry_id}") from exc

    def count(self) -> int:
        stmt = select(func.count()).select_from(models.OfflineQueueEntryOrm).where(
            models.OfflineQueueEntryOrm.dead_lettered_at.is_(None)
        )
        with self._session_factory() as session:
            return int(session.scalar(stmt) or 0)

    @staticmethod
    def _to_domain(orm_entry: models.OfflineQueueEntryOrm) -> OfflineQueueEntry:
        return OfflineQueueEntry(
            sequence=orm_entry.sequence,
            entry_id=QueueEntryId(orm_entry.entry_id),
            kind=QueuedWriteKind(orm_entry.kind),
            payload=json.loads(orm_entry.payload),
            queued_at=_as_utc(orm_entry.queued_at),
            dead_lettered_at=_as_utc_or_none(orm_entry.dead_lettered_at),
            last_error=orm_entry.last_error,
        )


class ManualSubmissionRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def add(self, submission: ManualSubmission) -> ManualSubmission:
        try:
            with self._session_factory.begin() as session:
                session.add(
                    models.ManualSubmissionOrm(
                        id=submission.id,
                        vin=submission.report.vin,
                        disposition=submission.report.disposition.value,
                        report=submission.report.model_dump_json(),
                        status=submission.status.value,
                        created_at=_as_utc(submission.created_at),
                        submitted_at=_as_utc_or_none(submission.submitted_at),
                    )
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to store manual submission for VIN {submission.report.vin}") from exc
        return submission

    def list(self, status: ManualSubmissionStatus | None = None) -> list[ManualSubmission]:
        stmt = select(models.ManualSubmissionOrm).order_by(models.ManualSubmissionOrm.created_at.asc())
        if status is not None:
            stmt = stmt.where(models.ManualSubmissionOrm.status == status.value)
        with self._session_factory() as session:
            return [self._to_domain(row) for row in session.scalars(stmt).all()]

    def mark_submitted(self, submission_id: UUID, when: datetime) -> bool:
        stmt = (
            update(models.ManualSubmissionOrm)
            .where(
                models.ManualSubmissionOrm.id == submission_id,
                models.ManualSubmissionOrm.status == ManualSubmissionStatus.PENDING.value,
            )
            .values(status=ManualSubmissionStatus.SUBMITTED.value, submitted_at=_as_utc(when))
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory.begin() as session:
                return session.execute(stmt).rowcount == 1
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to mark manual submission {submission_id} submitted") from exc

    @staticmethod
    def _to_domain(orm_submission: models.ManualSubmissionOrm) -> ManualSubmission:
        return ManualSubmission(
            id=orm_submission.id,
            report=NmvtisReport.model_validate_json(orm_submission.report),
            status=ManualSubmissionStatus(orm_submission.status),
            created_at=_as_utc(orm_submission.created_at),
            submitted_at=_as_utc_or_none(orm_submission.submitted_at),
        )
