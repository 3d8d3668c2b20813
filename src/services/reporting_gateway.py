from __future__ import annotations

import logging
from typing import Protocol
from uuid import UUID

from clients.nmvtis import NmvtisAPIError, NmvtisClient
from config import AppSettings
from db.repositories import ManualSubmissionRepository
from domain.compliance import (
    FailureKind,
    GatewayResult,
    ManualSubmission,
    ManualSubmissionStatus,
    ReportingEntity,
    ScheduledReport,
    build_nmvtis_report,
)
from utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

_INVALID_PAYLOAD_STATUS_CODES = frozenset({400, 422})


class ReportingGateway(Protocol):
    def submit(self, report: ScheduledReport) -> GatewayResult: ...


class ApiReportingGateway(ReportingGateway):
    """Submits reports synchronously through the consolidator API."""

    def __init__(self, *, client: NmvtisClient, entity: ReportingEntity) -> None:
        self.client = client
        self.entity = entity

    def submit(self, report: ScheduledReport) -> GatewayResult:
        outbound = build_nmvtis_report(report, self.entity)
        try:
            receipt = self.client.submit_report(outbound)
        except NmvtisAPIError as exc:
            kind = _classify(exc)
            logger.warning(
                "NMVTIS submission failed vin=%s status_code=%s kind=%s: %s", report.vin, exc.status_code, kind, exc
            )
            return GatewayResult.failed(str(exc), kind)
        if receipt.payload.get("success") is False:
            message = str(receipt.payload.get("message") or "NMVTIS reporting was not accepted")
            logger.warning("NMVTIS rejected report vin=%s: %s", report.vin, message)
            return GatewayResult.failed(message, FailureKind.REJECTED)
        return GatewayResult.sent("Vehicle successfully reported to NMVTIS", receipt.report_id)


class ManualSubmissionGateway(ReportingGateway):
    """Queues reports for hand entry into AAMVA SVRS, which offers no API.

    A queued report counts as sent: the remaining step is a person copying it into the web form.
    """

    def __init__(
        self, *, repository: ManualSubmissionRepository, entity: ReportingEntity, clock: Clock = utc_now
    ) -> None:
        self.repository = repository
        self.entity = entity
        self.clock = clock

    def submit(self, report: ScheduledReport) -> GatewayResult:
        submission = ManualSubmission(report=build_nmvtis_report(report, self.entity), created_at=self.clock())
        self.repository.add(submission)
        logger.info("Queued NMVTIS report vin=%s for manual submission id=%s", report.vin, submission.id)
        return GatewayResult.sent(
            "Vehicle queued for NMVTIS reporting. Submit it through AAMVA SVRS.", report_id=str(submission.id)
        )

    def pending(self) -> list[ManualSubmission]:
        return self.repository.list(ManualSubmissionStatus.PENDING)

    def mark_submitted(self, submission_id: UUID) -> bool:
        marked = self.repository.mark_submitted(submission_id, self.clock())
        if not marked:
            logger.warning("Manual submission %s is unknown or already submitted", submission_id)
        return marked


def _classify(exc: NmvtisAPIError) -> FailureKind:
    if exc.is_unavailable:
        return FailureKind.GATEWAY_UNAVAILABLE
    if exc.status_code in _INVALID_PAYLOAD_STATUS_CODES:
        return FailureKind.INVALID_PAYLOAD
    return FailureKind.REJECTED


def reporting_entity_from_settings(settings: AppSettings) -> ReportingEntity:
    return ReportingEntity(
        reporting_entity_id=settings.reporting_entity_id,
        name=settings.entity_name,
        address=settings.entity_address,
        city=settings.entity_city,
        state=settings.entity_state,
        zip=settings.entity_zip,
        phone=settings.entity_phone,
    )


def build_reporting_gateway(
    settings: AppSettings, manual_repository: ManualSubmissionRepository, *, clock: Clock = utc_now
) -> ReportingGateway:
    entity = reporting_entity_from_settings(settings)
    if settings.nmvtis_provider == "auto_data_direct":
        if not settings.nmvtis_api_key:
            msg = "nmvtis_api_key must be set when nmvtis_provider is auto_data_direct"
            raise ValueError(msg)
        client = NmvtisClient(
            api_key=settings.nmvtis_api_key,
            base_url=settings.nmvtis_base_url,
            timeout=settings.nmvtis_timeout_seconds,
        )
        return ApiReportingGateway(client=client, entity=entity)
    return ManualSubmissionGateway(repository=manual_repository, entity=entity, clock=clock)
