from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from domain.compliance import NmvtisReport

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class NmvtisAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def is_unavailable(self) -> bool:
        """True when the failure says nothing about the report itself (network, timeout, 5xx, throttling)."""
        # An unreadable 2xx body leaves the outcome unknown, so it is treated as an outage too.
        if self.status_code is None or 200 <= self.status_code < 300:
            return True
        return self.status_code >= 500 or self.status_code in _RETRYABLE_STATUS_CODES


@dataclass(frozen=True)
class SubmissionReceipt:
    report_id: str | None
    payload: dict[str, Any]


class NmvtisClient:
    """Client for an NMVTIS data consolidator's JSON reporting endpoint (Auto Data Direct style)."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.add123.com",
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not api_key:
            msg = "api_key must be provided"
            raise ValueError(msg)

        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def submit_report(self, report: NmvtisReport) -> SubmissionReceipt:
        body = {
            "reporting_entity_id": report.reporting_entity_id,
            "vin": report.vin,
            "obtain_date": report.obtain_date.isoformat(),
            "obtained_from": report.obtained_from,
            "disposition": report.disposition.value,
            "export_intended": report.export_intended,
            "vehicle_type": report.vehicle_type,
            "odometer": report.odometer,
            "entity_info": {
                "name": report.entity.name,
                "address": report.entity.address,
                "city": report.entity.city,
                "state": report.entity.state,
                "zip": report.entity.zip,
                "phone": report.entity.phone,
            },
        }
        logger.info("Submitting NMVTIS report vin=%s disposition=%s", report.vin, report.disposition)
        payload = self._request("POST", "/nmvtis/report", json_body=body)
        report_id = payload.get("report_id")
        return SubmissionReceipt(report_id=str(report_id) if report_id is not None else None, payload=payload)

    def _request(self, method: str, path: str, *, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=json_body,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            error_payload: Any | None = None
            message = f"NMVTIS reporting failed: {getattr(resp, 'reason', None) or 'HTTP error'}"
            if resp is not None:
                try:
                    error_payload = resp.json()
                    if isinstance(error_payload, dict) and error_payload.get("message"):
                        message = f"NMVTIS reporting failed: {error_payload['message']}"
                except ValueError:
                    error_payload = resp.text
            raise NmvtisAPIError(message, status_code=status_code, payload=error_payload) from exc
        except requests.Timeout as exc:
            raise NmvtisAPIError(f"NMVTIS reporting timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise NmvtisAPIError(f"NMVTIS reporting error: {exc}", status_code=status_code) from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise NmvtisAPIError(
                "NMVTIS reporting returned invalid JSON", status_code=response.status_code, payload=response.text
            ) from exc

        if not isinstance(payload_raw, dict):
            raise NmvtisAPIError(
                "NMVTIS reporting returned unexpected payload type",
                status_code=response.status_code,
                payload=payload_raw,
            )

        return payload_raw


__all__ = ["NmvtisAPIError", "NmvtisClient", "SubmissionReceipt"]
