import logging
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from time import perf_counter
from typing import Annotated, Any, AsyncGenerator, Awaitable, Callable
from uuid import UUID

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.dependencies import get_ledger, get_queue, get_scheduler, get_services
from config import config
from db.db import init_db_url
from domain.cash import CashAccount, CashTransaction, CashTransactionType, YardCashSummary
from domain.compliance import GatewayResult, ManualSubmission, ReportStatus, ScheduledReport, ScheduledReportId
from domain.errors import ConcurrentUpdateError, PersistenceError, ReportNotFound, ReportNotRetryable, ValidationError
from domain.offline import OfflineQueueEntry
from services.app_services import AppServices, build_services
from services.cash_ledger import CashLedger
from services.compliance_scheduler import ComplianceScheduler
from services.offline_queue import OfflineReplayQueue
from services.reporting_gateway import ManualSubmissionGateway

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI) -> AsyncGenerator[None, None]:
    settings = config()
    session_factory = init_db_url(settings.database_url)
    services = build_services(settings, session_factory)
    fastapi_app.state.services = services
    services.poller.start()
    yield
    services.poller.stop()
    engine = session_factory.kw["bind"]
    engine.dispose()


app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def log_process_time(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    start_time = perf_counter()
    response = await call_next(request)
    process_time = perf_counter() - start_time
    logger.info("Request time: %s %s: %.4fs", request.method, request.url, process_time)
    return response


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, exc)


@app.exception_handler(ReportNotFound)
async def not_found_handler(request: Request, exc: ReportNotFound) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ReportNotRetryable)
async def not_retryable_handler(request: Request, exc: ReportNotRetryable) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(ConcurrentUpdateError)
async def concurrent_update_handler(request: Request, exc: ConcurrentUpdateError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("Persistence failure on %s %s: %s", request.method, request.url, exc)
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


class BalanceResponse(BaseModel):
    operator_id: str
    balance: Decimal


class ApplyTransactionRequest(BaseModel):
    operator_name: str
    yard_id: str
    amount: Decimal
    type: CashTransactionType
    description: str
    related_transaction_id: str | None = None
    related_vin: str | None = None
    recorded_by: str | None = None
    transaction_id: UUID | None = None


class SetBalanceRequest(BaseModel):
    operator_name: str
    yard_id: str
    new_balance: Decimal
    reason: str
    set_by: str


class ReconciliationResponse(BaseModel):
    operator_id: str
    cached_balance: Decimal
    derived_balance: Decimal
    discrepancy: Decimal
    transaction_count: int
    is_consistent: bool


class PurchaseReportRequest(BaseModel):
    transaction_id: str
    vin: str
    obtain_date: date
    counterparty_name: str
    odometer: int | None = None


class SaleReportRequest(BaseModel):
    transaction_id: str
    vin: str
    obtain_date: date
    seller_name: str
    buyer_name: str


class ScanResponse(BaseModel):
    sent: int
    failed: int
    skipped: int
    errors: int
    overlapped: bool


class QueueStatusResponse(BaseModel):
    depth: int
    online: bool


class FlushResponse(BaseModel):
    applied: int
    depth: int


class ConnectivityRequest(BaseModel):
    online: bool


@app.get("/operators/{operator_id}/balance")
def get_balance(operator_id: str, ledger: Annotated[CashLedger, Depends(get_ledger)]) -> BalanceResponse:
    return BalanceResponse(operator_id=operator_id, balance=ledger.get_balance(operator_id))


@app.get("/operators/{operator_id}/history")
def get_history(
    operator_id: str, ledger: Annotated[CashLedger, Depends(get_ledger)], limit: int | None = None
) -> list[CashTransaction]:
    return ledger.get_history(operator_id, limit)


@app.post("/operators/{operator_id}/transactions", status_code=status.HTTP_201_CREATED)
def apply_transaction(
    operator_id: str, body: ApplyTransactionRequest, ledger: Annotated[CashLedger, Depends(get_ledger)]
) -> CashTransaction:
    return ledger.apply_transaction(
        operator_id,
        body.operator_name,
        body.yard_id,
        body.amount,
        body.type,
        body.description,
        body.related_transaction_id,
        body.related_vin,
        body.recorded_by,
        transaction_id=body.transaction_id,
    )


@app.put("/operators/{operator_id}/balance")
def set_balance(
    operator_id: str, body: SetBalanceRequest, ledger: Annotated[CashLedger, Depends(get_ledger)]
) -> CashTransaction:
    return ledger.set_balance_directly(
        operator_id, body.operator_name, body.yard_id, body.new_balance, body.reason, body.set_by
    )


@app.get("/operators/{operator_id}/reconciliation")
def reconcile(operator_id: str, ledger: Annotated[CashLedger, Depends(get_ledger)]) -> ReconciliationResponse:
    result = ledger.reconcile(operator_id)
    return ReconciliationResponse(
        operator_id=result.operator_id,
        cached_balance=result.cached_balance,
        derived_balance=result.derived_balance,
        discrepancy=result.discrepancy,
        transaction_count=result.transaction_count,
        is_consistent=result.is_consistent,
    )


@app.get("/accounts")
def list_accounts(
    ledger: Annotated[CashLedger, Depends(get_ledger)], yard_id: str | None = None
) -> list[CashAccount]:
    return ledger.list_accounts(yard_id)


@app.get("/yards/{yard_id}/summary")
def yard_summary(yard_id: str, ledger: Annotated[CashLedger, Depends(get_ledger)]) -> YardCashSummary:
    return ledger.yard_summary(yard_id)


@app.post("/reports/purchases", status_code=status.HTTP_201_CREATED)
def schedule_purchase_report(
    body: PurchaseReportRequest, scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)]
) -> ScheduledReport:
    return scheduler.schedule_purchase_report(
        body.transaction_id, body.vin, body.obtain_date, body.counterparty_name, body.odometer
    )


@app.post("/reports/sales")
def report_sale(
    body: SaleReportRequest, scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)]
) -> GatewayResult:
    return scheduler.report_sale_immediately(
        body.transaction_id, body.vin, body.obtain_date, body.seller_name, body.buyer_name
    )


@app.get("/reports")
def list_reports(
    scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)], status: ReportStatus | None = None
) -> list[ScheduledReport]:
    return scheduler.list_reports(status)


@app.post("/reports/process")
def process_due_reports(scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)]) -> ScanResponse:
    result = scheduler.process_due_reports()
    return ScanResponse(
        sent=result.sent,
        failed=result.failed,
        skipped=result.skipped,
        errors=result.errors,
        overlapped=result.overlapped,
    )


@app.get("/reports/{report_id}")
def get_report(
    report_id: UUID, scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)]
) -> ScheduledReport:
    return scheduler.get_report(ScheduledReportId(report_id))


@app.post("/reports/{report_id}/retry")
def retry_report(
    report_id: UUID, scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)]
) -> GatewayResult:
    return scheduler.retry_report(ScheduledReportId(report_id))


@app.patch("/reports/{report_id}/payload")
def correct_payload(
    report_id: UUID, changes: dict[str, Any], scheduler: Annotated[ComplianceScheduler, Depends(get_scheduler)]
) -> ScheduledReport:
    return scheduler.correct_payload(ScheduledReportId(report_id), **changes)


@app.get("/manual-submissions")
def list_manual_submissions(services: Annotated[AppServices, Depends(get_services)]) -> list[ManualSubmission]:
    return _manual_gateway(services).pending()


@app.post("/manual-submissions/{submission_id}/submitted", status_code=status.HTTP_204_NO_CONTENT)
def mark_manual_submission_submitted(
    submission_id: UUID, services: Annotated[AppServices, Depends(get_services)]
) -> None:
    if not _manual_gateway(services).mark_submitted(submission_id):
        raise HTTPException(status_code=404, detail=f"No pending manual submission {submission_id}")


@app.get("/queue")
def queue_status(queue: Annotated[OfflineReplayQueue, Depends(get_queue)]) -> QueueStatusResponse:
    return QueueStatusResponse(depth=queue.depth, online=queue.monitor.is_online)


@app.post("/queue/flush")
def flush_queue(queue: Annotated[OfflineReplayQueue, Depends(get_queue)]) -> FlushResponse:
    applied = queue.flush()
    return FlushResponse(applied=applied, depth=queue.depth)


@app.get("/queue/dead-letters")
def list_dead_letters(queue: Annotated[OfflineReplayQueue, Depends(get_queue)]) -> list[OfflineQueueEntry]:
    return queue.dead_letters()


@app.put("/connectivity")
def set_connectivity(
    body: ConnectivityRequest, queue: Annotated[OfflineReplayQueue, Depends(get_queue)]
) -> QueueStatusResponse:
    queue.monitor.set_online(body.online)
    return QueueStatusResponse(depth=queue.depth, online=queue.monitor.is_online)


def _manual_gateway(services: AppServices) -> ManualSubmissionGateway:
    if not isinstance(services.gateway, ManualSubmissionGateway):
        raise HTTPException(status_code=404, detail="Manual submissions are disabled for this reporting provider")
    return services.gateway
