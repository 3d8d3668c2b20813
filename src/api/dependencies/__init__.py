from typing import Annotated

from fastapi import Depends, Request

from services.app_services import AppServices
from services.cash_ledger import CashLedger
from services.compliance_scheduler import ComplianceScheduler
from services.offline_queue import OfflineReplayQueue


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_ledger(services: Annotated[AppServices, Depends(get_services)]) -> CashLedger:
    return services.ledger


def get_scheduler(services: Annotated[AppServices, Depends(get_services)]) -> ComplianceScheduler:
    return services.scheduler


def get_queue(services: Annotated[AppServices, Depends(get_services)]) -> OfflineReplayQueue:
    return services.queue
