from __future__ import annotations

import re
from datetime import date, datetime
from enum import StrEnum
from typing import NewType
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from domain.errors import InvalidPayload

ScheduledReportId = NewType("ScheduledReportId", UUID)

VIN_LENGTH = 17
_FORBIDDEN_VIN_CHARS = re.compile(r"[IOQ]")
_VIN_CHARS = re.compile(r"^[A-Z0-9]+$")


class ReportKind(StrEnum):
    PURCHASE = "PURCHASE"
    SALE = "SALE"


class ReportStatus(StrEnum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"


class FailureKind(StrEnum):
    # Network or API outage; retried automatically.
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    # Bad VIN or missing field; needs the data corrected before a retry.
    INVALID_PAYLOAD = "invalid_payload"
    # The gateway answered but refused the report.
    REJECTED = "rejected"


class Disposition(StrEnum):
    TBD = "TBD"
    SOLD = "SOLD"
    CRUSH = "CRUSH"
    SCRAP = "SCRAP"
    PARTS = "PARTS"


DISPOSITION_BY_KIND: dict[ReportKind, Disposition] = {
    ReportKind.PURCHASE: Disposition.TBD,
    ReportKind.SALE: Disposition.SOLD,
}


class VehicleReportData(BaseModel):
    vin: str
    obtain_date: date
    seller_name: str
    buyer_name: str | None = None
    odometer: int | None = None


class ScheduledReport(BaseModel):
    id: ScheduledReportId = ScheduledReportId(Field(default_factory=uuid4))
    vin: str
    report_kind: ReportKind
    schedule_at: datetime
    payload: VehicleReportData
    originating_transaction_id: str
    status: ReportStatus = ReportStatus.SCHEDULED
    attempt_count: int = 0
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    failure_kind: FailureKind | None = None
    gateway_report_id: str | None = None
    created_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status == ReportStatus.SENT


class GatewayResult(BaseModel):
    success: bool
    message: str
    report_id: str | None = None
    failure_kind: FailureKind | None = None

    @classmethod
    def sent(cls, message: str, report_id: str | None = None) -> GatewayResult:
        return cls(success=True, message=message, report_id=report_id)

    @classmethod
    def failed(cls, message: str, failure_kind: FailureKind = FailureKind.GATEWAY_UNAVAILABLE) -> GatewayResult:
        return cls(success=False, message=message, failure_kind=failure_kind)


class ReportingEntity(BaseModel):
    reporting_entity_id: str
    name: str
    address: str
    city: str
    state: str
    zip: str
    phone: str


class NmvtisReport(BaseModel):
    """The outbound record for one vehicle, as the reporting services expect it."""

    reporting_entity_id: str
    vin: str
    obtain_date: date
    obtained_from: str
    disposition: Disposition
    export_intended: bool = False
    vehicle_type: str = "AUTOMOBILE"
    odometer: int | None = None
    entity: ReportingEntity


def normalize_vin(vin: str) -> str:
    normalized = (vin or "").strip().upper()
    if len(normalized) != VIN_LENGTH:
        raise InvalidPayload(f"VIN must be exactly {VIN_LENGTH} characters, got {len(normalized)}", field="vin")
    if _FORBIDDEN_VIN_CHARS.search(normalized):
        raise InvalidPayload("VIN cannot contain letters I, O, or Q", field="vin")
    if not _VIN_CHARS.match(normalized):
        raise InvalidPayload("VIN may only contain letters and digits", field="vin")
    return normalized


def validate_payload(kind: ReportKind, payload: VehicleReportData) -> VehicleReportData:
    """Return a normalized copy of ``payload`` or raise InvalidPayload."""
    vin = normalize_vin(payload.vin)
    seller_name = payload.seller_name.strip()
    if not seller_name:
        raise InvalidPayload("seller name is required", field="seller_name")
    buyer_name = payload.buyer_name.strip() if payload.buyer_name else None
    if kind == ReportKind.SALE and not buyer_name:
        raise InvalidPayload("buyer name is required for sale reports", field="buyer_name")
    if payload.odometer is not None and payload.odometer < 0:
        raise InvalidPayload("odometer must be >= 0", field="odometer")
    return payload.model_copy(update={"vin": vin, "seller_name": seller_name, "buyer_name": buyer_name})


def build_nmvtis_report(report: ScheduledReport, entity: ReportingEntity) -> NmvtisReport:
    return NmvtisReport(
        reporting_entity_id=entity.reporting_entity_id,
        vin=report.payload.vin,
        obtain_date=report.payload.obtain_date,
        obtained_from=report.payload.seller_name,
        disposition=DISPOSITION_BY_KIND[report.report_kind],
        odometer=report.payload.odometer,
        entity=entity,
    )


class ManualSubmissionStatus(StrEnum):
    PENDING = "pending"
    SUBMITTED = "submitted"


class ManualSubmission(BaseModel):
    """A report waiting to be keyed into the web-only reporting service by hand."""

    id: UUID = Field(default_factory=uuid4)
    report: NmvtisReport
    status: ManualSubmissionStatus = ManualSubmissionStatus.PENDING
    created_at: datetime
    submitted_at: datetime | None = None
