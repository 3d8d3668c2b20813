from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Protocol

import pydantic

from domain.compliance import (
    FailureKind,
    GatewayResult,
    ReportKind,
    ReportStatus,
    ScheduledReport,
    ScheduledReportId,
    VehicleReportData,
    validate_payload,
)
from domain.errors import (
    DuplicateVehicleReport,
    InvalidPayload,
    ReportNotFound,
    ReportNotRetryable,
    ValidationError,
)
from services.reporting_gateway import ReportingGateway
from utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class ScheduledReportStore(Protocol):
    def add(self, report: ScheduledReport) -> tuple[ScheduledReport, bool]: ...

    def get(self, report_id: ScheduledReportId) -> ScheduledReport | None: ...

    def get_by_origin(self, transaction_id: str, kind: ReportKind) -> ScheduledReport | None: ...

    def find_by_vin(self, vin: str, kind: ReportKind) -> list[ScheduledReport]: ...

    def list(self, status: ReportStatus | None = None) -> list[ScheduledReport]: ...

    def list_due(
        self, now: datetime, *, stale_claim_before: datetime, limit: int | None = None
    ) -> list[ScheduledReport]: ...

    def list_failed(self, failure_kind: FailureKind, *, max_attempts: int) -> list[ScheduledReport]: ...

    def count(self, status: ReportStatus) -> int: ...

    def claim(
        self,
        report_id: ScheduledReportId,
        *,
        expected_status: ReportStatus,
        expected_attempts: int,
        now: datetime,
    ) -> ScheduledReport | None: ...

    def record_outcome(
        self,
        report_id: ScheduledReportId,
        *,
        status: ReportStatus,
        last_error: str | None,
        failure_kind: FailureKind | None,
        gateway_report_id: str | None,
    ) -> ScheduledReport: ...

    def update_payload(self, report_id: ScheduledReportId, payload: VehicleReportData) -> ScheduledReport: ...


class VehicleTransactionLookup(Protocol):
    """Read-only view of the vehicle transactions reports originate from."""

    def transaction_exists(self, transaction_id: str) -> bool: ...


@dataclass
class ScanResult:
    sent: int = 0
    failed: int = 0
    # Lost the claim to another scanner.
    skipped: int = 0
    errors: int = 0
    overlapped: bool = False

    @property
    def processed(self) -> int:
        return self.sent + self.failed


class ComplianceScheduler:
    """Creates, times and retries outbound NMVTIS reports.

    Purchase reports are held for ``purchase_delay`` and picked up by ``process_due_reports``;
    sale reports are submitted right away. Every submission attempt first claims the report
    with a compare-and-swap on its attempt counter, so two scanners never submit the same
    report for the same attempt. Gateway failures are recorded on the report and never raised.
    """

    def __init__(
        self,
        store: ScheduledReportStore,
        gateway: ReportingGateway,
        *,
        clock: Clock = utc_now,
        purchase_delay: timedelta = timedelta(hours=40),
        max_attempts: int = 5,
        retry_backoff: timedelta = timedelta(minutes=30),
        claim_timeout: timedelta = timedelta(minutes=5),
        transaction_lookup: VehicleTransactionLookup | None = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.clock = clock
        self.purchase_delay = purchase_delay
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.claim_timeout = claim_timeout
        self.transaction_lookup = transaction_lookup
        self._scan_lock = threading.Lock()

    def schedule_purchase_report(
        self,
        transaction_id: str,
        vin: str,
        obtain_date: date | str,
        counterparty_name: str,
        odometer: int | None = None,
    ) -> ScheduledReport:
        """Schedule the acquisition report for a purchase. Repeat calls return the existing report."""
        transaction_id = _required(transaction_id, "transaction_id")
        payload = _build_payload(
            ReportKind.PURCHASE,
            vin=vin,
            obtain_date=obtain_date,
            seller_name=counterparty_name,
            odometer=odometer,
        )

        existing = self.store.get_by_origin(transaction_id, ReportKind.PURCHASE)
        if existing is not None:
            logger.info("Purchase report for transaction=%s already scheduled id=%s", transaction_id, existing.id)
            return existing

        for other in self.store.find_by_vin(payload.vin, ReportKind.PURCHASE):
            if other.originating_transaction_id != transaction_id:
                raise DuplicateVehicleReport(
                    vin=payload.vin,
                    existing_transaction_id=other.originating_transaction_id,
                    transaction_id=transaction_id,
                )

        now = self.clock()
        report, created = self.store.add(
            ScheduledReport(
                vin=payload.vin,
                report_kind=ReportKind.PURCHASE,
                schedule_at=now + self.purchase_delay,
                payload=payload,
                originating_transaction_id=transaction_id,
                created_at=now,
            )
        )
        if created:
            logger.info(
                "Scheduled purchase report id=%s vin=%s transaction=%s due=%s",
                report.id,
                report.vin,
                transaction_id,
                report.schedule_at.isoformat(),
            )
        return report

    def report_sale_immediately(
        self,
        transaction_id: str,
        vin: str,
        obtain_date: date | str,
        seller_name: str,
        buyer_name: str,
    ) -> GatewayResult:
        transaction_id = _required(transaction_id, "transaction_id")
        payload = _build_payload(
            ReportKind.SALE,
            vin=vin,
            obtain_date=obtain_date,
            seller_name=seller_name,
            buyer_name=buyer_name,
        )

        report = self.store.get_by_origin(transaction_id, ReportKind.SALE)
        if report is None:
            now = self.clock()
            report, _ = self.store.add(
                ScheduledReport(
                    vin=payload.vin,
                    report_kind=ReportKind.SALE,
                    schedule_at=now,
                    payload=payload,
                    originating_transaction_id=transaction_id,
                    created_at=now,
                )
            )

        if report.status != ReportStatus.SCHEDULED:
            logger.info("Sale report for transaction=%s already %s; not resubmitting", transaction_id, report.status)
            return _recorded_result(report)

        outcome = self._attempt(report)
        if outcome is None:
            current = self.store.get(report.id)
            return _recorded_result(current or report)
        return outcome

    def process_due_reports(self) -> ScanResult:
        """Submit every due scheduled report and every failed report whose retry backoff has elapsed.

        A failure on one report never stops the others. A scan that starts while another one is
        still running in this process returns immediately with ``overlapped`` set.
        """
        if not self._scan_lock.acquire(blocking=False):
            logger.info("Compliance scan already running; skipping this trigger")
            return ScanResult(overlapped=True)

        try:
            result = ScanResult()
            now = self.clock()
            due = self.store.list_due(now, stale_claim_before=now - self.claim_timeout)
            retries = [
                report
                for report in self.store.list_failed(FailureKind.GATEWAY_UNAVAILABLE, max_attempts=self.max_attempts)
                if self._retry_due(report, now)
            ]

            seen: set[ScheduledReportId] = set()
            for report in [*due, *retries]:
                if report.id in seen:
                    continue
                seen.add(report.id)
                try:
                    outcome = self._attempt(report)
                except Exception:
                    logger.exception("Failed to process scheduled report id=%s vin=%s", report.id, report.vin)
                    result.errors += 1
                    continue
                if outcome is None:
                    result.skipped += 1
                elif outcome.success:
                    result.sent += 1
                else:
                    result.failed += 1

            if seen:
                logger.info(
                    "Compliance scan done: sent=%d failed=%d skipped=%d errors=%d",
                    result.sent,
                    result.failed,
                    result.skipped,
                    result.errors,
                )
            return result
        finally:
            self._scan_lock.release()

    def retry_report(self, report_id: ScheduledReportId) -> GatewayResult:
        report = self.get_report(report_id)
        if report.status != ReportStatus.FAILED:
            raise ReportNotRetryable(report_id, report.status)

        outcome = self._attempt(report)
        if outcome is None:
            current = self.get_report(report_id)
            raise ReportNotRetryable(report_id, f"{current.status} and being retried elsewhere")
        return outcome

    def get_report(self, report_id: ScheduledReportId) -> ScheduledReport:
        report = self.store.get(report_id)
        if report is None:
            raise ReportNotFound(report_id)
        return report

    def list_reports(self, status: ReportStatus | None = None) -> list[ScheduledReport]:
        return self.store.list(status)

    def pending_count(self) -> int:
        return self.store.count(ReportStatus.SCHEDULED)

    def correct_payload(self, report_id: ScheduledReportId, **changes: Any) -> ScheduledReport:
        """Fix the vehicle data of a report that has not been sent yet. The status is left alone."""
        report = self.get_report(report_id)
        if report.status == ReportStatus.SENT:
            raise ReportNotRetryable(report_id, report.status)

        unknown = set(changes) - set(VehicleReportData.model_fields)
        if unknown:
            raise InvalidPayload(f"Unknown report fields: {', '.join(sorted(unknown))}")

        payload = _build_payload(report.report_kind, **{**report.payload.model_dump(), **changes})
        updated = self.store.update_payload(report_id, payload)
        logger.info("Corrected payload of report id=%s fields=%s", report_id, sorted(changes))
        return updated

    def _retry_due(self, report: ScheduledReport, now: datetime) -> bool:
        if report.last_attempt_at is None:
            return True
        backoff = self.retry_backoff * 2 ** max(report.attempt_count - 1, 0)
        return report.last_attempt_at + backoff <= now

    def _attempt(self, report: ScheduledReport) -> GatewayResult | None:
        """Claim ``report`` and submit it. Returns None if another caller claimed it first."""
        claimed = self.store.claim(
            report.id,
            expected_status=report.status,
            expected_attempts=report.attempt_count,
            now=self.clock(),
        )
        if claimed is None:
            logger.info("Scheduled report id=%s was claimed by another worker", report.id)
            return None

        try:
            payload = validate_payload(claimed.report_kind, claimed.payload)
        except InvalidPayload as exc:
            return self._record_failure(claimed, GatewayResult.failed(str(exc), FailureKind.INVALID_PAYLOAD))

        if self.transaction_lookup is not None and not self.transaction_lookup.transaction_exists(
            claimed.originating_transaction_id
        ):
            message = f"Originating transaction {claimed.originating_transaction_id} no longer exists"
            return self._record_failure(claimed, GatewayResult.failed(message, FailureKind.INVALID_PAYLOAD))

        try:
            result = self.gateway.submit(claimed.model_copy(update={"payload": payload, "vin": payload.vin}))
        except Exception as exc:
            logger.exception("Reporting gateway raised for report id=%s", claimed.id)
            result = GatewayResult.failed(f"Reporting gateway error: {exc}")

        if not result.success:
            return self._record_failure(claimed, result)

        self.store.record_outcome(
            claimed.id,
            status=ReportStatus.SENT,
            last_error=None,
            failure_kind=None,
            gateway_report_id=result.report_id,
        )
        logger.info(
            "Sent %s report id=%s vin=%s attempt=%d",
            claimed.report_kind,
            claimed.id,
            claimed.vin,
            claimed.attempt_count,
        )
        return result

    def _record_failure(self, report: ScheduledReport, result: GatewayResult) -> GatewayResult:
        failure_kind = result.failure_kind or FailureKind.GATEWAY_UNAVAILABLE
        self.store.record_outcome(
            report.id,
            status=ReportStatus.FAILED,
            last_error=result.message,
            failure_kind=failure_kind,
            gateway_report_id=None,
        )
        logger.warning(
            "%s report id=%s vin=%s failed attempt=%d kind=%s: %s",
            report.report_kind,
            report.id,
            report.vin,
            report.attempt_count,
            failure_kind,
            result.message,
        )
        return result


def _recorded_result(report: ScheduledReport) -> GatewayResult:
    if report.status == ReportStatus.SENT:
        return GatewayResult.sent("Vehicle already reported to NMVTIS", report.gateway_report_id)
    if report.status == ReportStatus.FAILED:
        return GatewayResult.failed(
            report.last_error or "Previous submission failed", report.failure_kind or FailureKind.GATEWAY_UNAVAILABLE
        )
    return GatewayResult.failed("Report submission is already in progress")


def _build_payload(kind: ReportKind, **fields: Any) -> VehicleReportData:
    try:
        payload = VehicleReportData.model_validate(fields)
    except pydantic.ValidationError as exc:
        error = exc.errors()[0]
        field = str(error["loc"][0]) if error["loc"] else None
        raise InvalidPayload(f"{field or 'payload'}: {error['msg']}", field=field) from exc
    return validate_payload(kind, payload)


def _required(value: str, field: str) -> str:
    if not value or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()
