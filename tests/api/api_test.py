from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

from api.api import app
from api.dependencies import get_services
from config import AppSettings
from domain.compliance import GatewayResult
from services.app_services import AppServices, build_services
from tests.constants import OPERATOR, OPERATOR_NAME, VIN, YARD
from tests.helpers.gateways import StubGateway
from tests.helpers.time_utils import ManualClock


@pytest.fixture()
def services(session_factory: sessionmaker[Session], clock: ManualClock) -> AppServices:
    return build_services(AppSettings(), session_factory, clock=clock)


@pytest.fixture()
def client(services: AppServices) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_services] = lambda: services
    # Not entered as a context manager: the lifespan (real database, poller thread) stays off.
    yield TestClient(app)
    app.dependency_overrides.clear()


def _deposit(client: TestClient, amount: str, **extra: object) -> dict:
    response = client.post(
        f"/operators/{OPERATOR}/transactions",
        json={
            "operator_name": OPERATOR_NAME,
            "yard_id": YARD,
            "amount": amount,
            "type": "deposit",
            "description": "Float",
            **extra,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_apply_transaction_and_read_back(client: TestClient) -> None:
    _deposit(client, "100")
    _deposit(client, "25.50")

    balance = client.get(f"/operators/{OPERATOR}/balance").json()
    history = client.get(f"/operators/{OPERATOR}/history", params={"limit": 1}).json()

    assert balance["operator_id"] == OPERATOR
    assert float(balance["balance"]) == 125.5
    assert len(history) == 1
    assert float(history[0]["amount"]) == 25.5


def test_invalid_amount_is_422(client: TestClient) -> None:
    response = client.post(
        f"/operators/{OPERATOR}/transactions",
        json={"operator_name": OPERATOR_NAME, "yard_id": YARD, "amount": "0", "type": "deposit", "description": "x"},
    )

    assert response.status_code == 422
    assert "non-zero" in response.json()["detail"]


def test_set_balance_and_reconcile(client: TestClient) -> None:
    _deposit(client, "40")

    response = client.put(
        f"/operators/{OPERATOR}/balance",
        json={
            "operator_name": OPERATOR_NAME,
            "yard_id": YARD,
            "new_balance": "10",
            "reason": "count",
            "set_by": "boss",
        },
    )
    reconciliation = client.get(f"/operators/{OPERATOR}/reconciliation").json()
    summary = client.get(f"/yards/{YARD}/summary").json()

    assert response.status_code == 200
    assert float(response.json()["amount"]) == -30
    assert reconciliation["is_consistent"] is True
    assert reconciliation["transaction_count"] == 2
    assert summary["account_count"] == 1
    assert len(client.get("/accounts", params={"yard_id": YARD}).json()) == 1


def test_purchase_report_lifecycle(client: TestClient, services: AppServices, clock: ManualClock) -> None:
    response = client.post(
        "/reports/purchases",
        json={"transaction_id": "TXN-1", "vin": VIN, "obtain_date": "2024-01-01", "counterparty_name": "Jane Doe"},
    )
    assert response.status_code == 201
    report_id = response.json()["id"]

    assert client.get(f"/reports/{report_id}").json()["status"] == "scheduled"
    assert client.post(f"/reports/{report_id}/retry").status_code == 409

    clock.advance(services.scheduler.purchase_delay)
    scan = client.post("/reports/process").json()
    assert scan["sent"] == 1

    assert client.get("/reports", params={"status": "sent"}).json()[0]["id"] == report_id
    pending = client.get("/manual-submissions").json()
    assert pending[0]["report"]["vin"] == VIN
    assert client.post(f"/manual-submissions/{pending[0]['id']}/submitted").status_code == 204
    assert client.get("/manual-submissions").json() == []


def test_unknown_report_is_404(client: TestClient) -> None:
    response = client.get("/reports/00000000-0000-0000-0000-000000000000")

    assert response.status_code == 404


def test_invalid_vin_is_422(client: TestClient) -> None:
    response = client.post(
        "/reports/purchases",
        json={"transaction_id": "TXN-1", "vin": "SHORT", "obtain_date": "2024-01-01", "counterparty_name": "Jane"},
    )

    assert response.status_code == 422


def test_sale_report_uses_gateway(session_factory: sessionmaker[Session], clock: ManualClock) -> None:
    gateway = StubGateway([GatewayResult.failed("Service unavailable")])
    services = build_services(AppSettings(), session_factory, clock=clock, gateway=gateway)
    app.dependency_overrides[get_services] = lambda: services
    try:
        client = TestClient(app)
        response = client.post(
            "/reports/sales",
            json={
                "transaction_id": "SALE-1",
                "vin": VIN,
                "obtain_date": "2024-01-01",
                "seller_name": "North Yard",
                "buyer_name": "Crusher Inc",
            },
        )
        report_id = client.get("/reports").json()[0]["id"]
        retried = client.post(f"/reports/{report_id}/retry")
        manual = client.get("/manual-submissions")
    finally:
        app.dependency_overrides.clear()

    assert response.json()["success"] is False
    assert response.json()["failure_kind"] == "gateway_unavailable"
    assert retried.json()["success"] is True
    assert manual.status_code == 404


def test_queue_status_and_connectivity(client: TestClient, services: AppServices) -> None:
    assert client.get("/queue").json() == {"depth": 0, "online": True}

    offline = client.put("/connectivity", json={"online": False}).json()
    assert offline == {"depth": 0, "online": False}
    assert not services.monitor.is_online

    assert client.post("/queue/flush").json() == {"applied": 0, "depth": 0}
    assert client.get("/queue/dead-letters").json() == []
