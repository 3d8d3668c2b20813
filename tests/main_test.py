from datetime import timedelta

import pytest
from sqlalchemy.orm import Session, sessionmaker

from config import AppSettings
from main import main
from services.app_services import AppServices, build_services
from tests.constants import OPERATOR, OPERATOR_NAME, VIN, YARD
from tests.helpers.time_utils import ManualClock


@pytest.fixture()
def services(session_factory: sessionmaker[Session], clock: ManualClock) -> AppServices:
    return build_services(AppSettings(), session_factory, clock=clock)


def test_apply_balance_and_history_commands(services: AppServices, capsys: pytest.CaptureFixture[str]) -> None:
    base = ["--operator-name", OPERATOR_NAME, "--yard-id", YARD]
    purchase = ["apply", OPERATOR, "-500", "--type", "purchase", "--description", "Civic", "--vin", VIN, *base]
    main(purchase, services=services)
    main(["apply", OPERATOR, "650", "--type", "sale", "--description", "Civic sold", *base], services=services)
    main(["balance", OPERATOR], services=services)
    main(["history", OPERATOR, "--limit", "1"], services=services)

    out = capsys.readouterr().out.splitlines()
    assert out[2] == f"{OPERATOR}: $150.00"
    assert "Civic sold" in out[3]
    assert len(out) == 4


def test_set_balance_and_reconcile_commands(services: AppServices, capsys: pytest.CaptureFixture[str]) -> None:
    main(
        ["set-balance", OPERATOR, "80", "--operator-name", OPERATOR_NAME, "--yard-id", YARD,
         "--reason", "count", "--set-by", "boss"],
        services=services,
    )
    main(["reconcile"], services=services)

    out = capsys.readouterr().out
    assert "Adjusted by $80.00; balance is now $80.00" in out
    assert f"{OPERATOR}: cached=$80.00 derived=$80.00 transactions=1 OK" in out


def test_report_commands(services: AppServices, clock: ManualClock, capsys: pytest.CaptureFixture[str]) -> None:
    services.scheduler.schedule_purchase_report("TXN-1", VIN, "2024-01-01", "Jane Doe")
    clock.advance(timedelta(hours=40))

    main(["process-reports"], services=services)
    main(["reports", "--status", "sent"], services=services)

    out = capsys.readouterr().out
    assert "Sent 1, failed 0, skipped 0, errors 0" in out
    assert VIN in out
    assert "1 report(s); 0 scheduled" in out


def test_queue_commands(services: AppServices, capsys: pytest.CaptureFixture[str]) -> None:
    main(["queue-depth"], services=services)
    main(["queue-flush"], services=services)

    out = capsys.readouterr().out
    assert "0 queued entries; 0 dead-lettered" in out
    assert "Applied 0 entries; 0 remain" in out
