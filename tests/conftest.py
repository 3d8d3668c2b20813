from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from db.repositories import CashLedgerRepository, OfflineQueueRepository, ScheduledReportRepository
from domain.compliance import GatewayResult
from services.cash_ledger import CashLedger
from services.compliance_scheduler import ComplianceScheduler
from tests.helpers.gateways import StubGateway
from tests.helpers.time_utils import ManualClock, TimeGenerator


@pytest.fixture(scope="function")
def engine() -> Generator[Engine, None, None]:
    # One shared connection so every session (and thread) sees the same in-memory database.
    test_engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)


@pytest.fixture(scope="function")
def test_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def ticking_clock() -> TimeGenerator:
    return TimeGenerator()


@pytest.fixture(scope="function")
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture(scope="function")
def ledger_repository(session_factory: sessionmaker[Session]) -> CashLedgerRepository:
    return CashLedgerRepository(session_factory)


@pytest.fixture(scope="function")
def report_repository(session_factory: sessionmaker[Session]) -> ScheduledReportRepository:
    return ScheduledReportRepository(session_factory)


@pytest.fixture(scope="function")
def queue_repository(session_factory: sessionmaker[Session]) -> OfflineQueueRepository:
    return OfflineQueueRepository(session_factory)


@pytest.fixture(scope="function")
def ledger(ledger_repository: CashLedgerRepository, ticking_clock: TimeGenerator) -> CashLedger:
    return CashLedger(ledger_repository, clock=ticking_clock)


@pytest.fixture(scope="function")
def gateway() -> StubGateway:
    return StubGateway(default=GatewayResult.sent("Vehicle successfully reported to NMVTIS", "NMVTIS-1"))


@pytest.fixture(scope="function")
def scheduler(
    report_repository: ScheduledReportRepository, gateway: StubGateway, clock: ManualClock
) -> ComplianceScheduler:
    return ComplianceScheduler(report_repository, gateway, clock=clock)
