from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings
from db.repositories import (
    CashLedgerRepository,
    ManualSubmissionRepository,
    OfflineQueueRepository,
    ScheduledReportRepository,
)
from services.cash_ledger import CashLedger
from services.compliance_scheduler import ComplianceScheduler, VehicleTransactionLookup
from services.connectivity import ConnectivityMonitor
from services.offline_queue import LedgerWriteSink, OfflineReplayQueue
from services.report_poller import ReportPoller
from services.reporting_gateway import ReportingGateway, build_reporting_gateway
from utils.clock import Clock, utc_now


@dataclass
class AppServices:
    ledger: CashLedger
    scheduler: ComplianceScheduler
    gateway: ReportingGateway
    queue: OfflineReplayQueue
    monitor: ConnectivityMonitor
    poller: ReportPoller


def build_services(
    settings: AppSettings,
    session_factory: sessionmaker[Session],
    *,
    clock: Clock = utc_now,
    gateway: ReportingGateway | None = None,
    transaction_lookup: VehicleTransactionLookup | None = None,
    online: bool = True,
) -> AppServices:
    ledger = CashLedger(
        CashLedgerRepository(session_factory),
        clock=clock,
        max_write_retries=settings.ledger_max_write_retries,
    )
    if gateway is None:
        gateway = build_reporting_gateway(settings, ManualSubmissionRepository(session_factory), clock=clock)
    scheduler = ComplianceScheduler(
        ScheduledReportRepository(session_factory),
        gateway,
        clock=clock,
        purchase_delay=timedelta(hours=settings.purchase_report_delay_hours),
        max_attempts=settings.report_max_attempts,
        retry_backoff=timedelta(minutes=settings.report_retry_backoff_minutes),
        claim_timeout=timedelta(seconds=settings.report_claim_timeout_seconds),
        transaction_lookup=transaction_lookup,
    )
    monitor = ConnectivityMonitor(online=online)
    queue = OfflineReplayQueue(
        OfflineQueueRepository(session_factory), LedgerWriteSink(ledger), monitor=monitor, clock=clock
    )
    poller = ReportPoller(
        scheduler,
        interval=timedelta(minutes=settings.report_poll_interval_minutes),
        jitter=timedelta(seconds=settings.report_poll_jitter_seconds),
        max_backoff=timedelta(minutes=settings.report_poll_max_backoff_minutes),
    )
    return AppServices(
        ledger=ledger, scheduler=scheduler, gateway=gateway, queue=queue, monitor=monitor, poller=poller
    )
