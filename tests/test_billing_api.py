from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import events
from backoffice.business.billing.service import billing_service
from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.clock import FixedClock
from backoffice.core.database import Base, get_db
from backoffice.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="billing-user", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    events.published_events.clear()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    events.published_events.clear()


def _headers(organization_id: str = "org-1") -> dict[str, str]:
    return {"x-organization-id": organization_id}


def _create_subscription(client: TestClient) -> dict:
    plan = client.post(
        "/catalog/plans",
        json={"name": "Team", "code": "TEAM", "pricing_model": "seat"},
        headers=_headers(),
    )
    plan_id = plan.json()["id"]
    pricing = client.post(
        f"/catalog/plans/{plan_id}/pricing",
        json={"pricing_type": "base", "amount": 5000, "interval": "monthly", "per_seat_amount": 1000},
        headers=_headers(),
    )
    assert pricing.status_code == 201
    client.post(f"/catalog/plans/{plan_id}/status", json={"status": "active"}, headers=_headers())

    created = client.post(
        "/subscriptions",
        json={"customer_org_id": "cust-1", "plan_id": plan_id, "seats": 2},
        headers=_headers(),
    )
    assert created.status_code == 201
    return created.json()


def test_invoice_from_subscription_over_http(client: TestClient) -> None:
    subscription = _create_subscription(client)

    response = client.post(
        f"/billing/invoices/from-subscription/{subscription['id']}",
        params={"period_start": subscription["current_period_end"], "period_end": "2099-01-01"},
        headers=_headers(),
    )
    assert response.status_code == 201
    invoice = response.json()
    assert invoice["status"] == "draft"
    assert invoice["subtotal"] == 7000
    assert [line["total"] for line in invoice["line_items"]] == [5000, 2000]
    assert invoice["line_items"][1] == {
        "description": "Seats (2 × $10.00)",
        "quantity": 2,
        "unitPrice": 1000,
        "total": 2000,
    }

    fetched = client.get(f"/billing/invoices/{invoice['id']}", headers=_headers())
    assert fetched.json()["invoice_number"] == invoice["invoice_number"]

    hidden = client.get(f"/billing/invoices/{invoice['id']}", headers=_headers("org-2"))
    assert hidden.status_code == 404


def test_invoice_period_must_be_ordered(client: TestClient) -> None:
    subscription = _create_subscription(client)

    response = client.post(
        f"/billing/invoices/from-subscription/{subscription['id']}",
        params={"period_start": "2030-02-01", "period_end": "2030-01-01"},
        headers=_headers(),
    )
    assert response.status_code == 422

    missing = client.post(f"/billing/invoices/from-subscription/{subscription['id']}", headers=_headers())
    assert missing.status_code == 422


def test_finalize_pay_and_void_over_http(client: TestClient) -> None:
    subscription = _create_subscription(client)
    invoice = client.get("/billing/invoices", params={"subscription_id": subscription["id"]}, headers=_headers()).json()[0]

    early_payment = client.post(f"/billing/invoices/{invoice['id']}/pay", headers=_headers())
    assert early_payment.status_code == 409

    finalized = client.post(f"/billing/invoices/{invoice['id']}/finalize", headers=_headers())
    assert finalized.status_code == 200
    assert finalized.json()["status"] == "final"

    paid = client.post(f"/billing/invoices/{invoice['id']}/pay", headers=_headers())
    assert paid.status_code == 200
    assert paid.json()["invoice"]["status"] == "paid"
    assert paid.json()["invoice"]["paid_at"] is not None

    voided = client.post(f"/billing/invoices/{invoice['id']}/void", json={"reason": "late"}, headers=_headers())
    assert voided.status_code == 409

    listed = client.get("/billing/invoices", params={"status": "paid"}, headers=_headers())
    assert [item["id"] for item in listed.json()] == [invoice["id"]]


def test_refresh_overdue_moves_subscription_to_past_due(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    subscription = _create_subscription(client)
    invoice = client.get("/billing/invoices", params={"subscription_id": subscription["id"]}, headers=_headers()).json()[0]
    client.post(f"/billing/invoices/{invoice['id']}/finalize", headers=_headers())

    not_yet = client.post(f"/billing/invoices/{invoice['id']}/refresh-overdue", headers=_headers())
    assert not_yet.status_code == 200
    assert not_yet.json()["overdue"] is False

    later = datetime.now(timezone.utc) + timedelta(days=45)
    monkeypatch.setattr(billing_service, "clock", FixedClock(later))

    refreshed = client.post(f"/billing/invoices/{invoice['id']}/refresh-overdue", headers=_headers())
    assert refreshed.json() == {
        "invoice_id": invoice["id"],
        "status": "overdue",
        "overdue": True,
        "subscription_status": "past_due",
    }

    paid = client.post(f"/billing/invoices/{invoice['id']}/pay", headers=_headers())
    assert paid.json()["invoice"]["status"] == "paid"
    assert paid.json()["subscription"]["status"] == "active"

    overdue_events = events.events_of_type("invoice.overdue")
    assert overdue_events[-1]["invoice_id"] == invoice["id"]


def test_standalone_invoice_over_http(client: TestClient) -> None:
    response = client.post(
        "/billing/invoices",
        json={
            "customer_org_id": "cust-3",
            "line_items": [{"description": "Data migration", "quantity": 3, "unitPrice": 4000, "total": 12000}],
            "tax": 1200,
        },
        headers=_headers(),
    )
    assert response.status_code == 201
    invoice = response.json()
    assert invoice["subscription_id"] is None
    assert invoice["status"] == "draft"
    assert invoice["subtotal"] == 12000
    assert invoice["total"] == 13200
    assert invoice["line_items"] == [{"description": "Data migration", "quantity": 3, "unitPrice": 4000, "total": 12000}]

    listed = client.get("/billing/invoices", params={"customer_org_id": "cust-3"}, headers=_headers())
    assert [item["id"] for item in listed.json()] == [invoice["id"]]

    empty = client.post("/billing/invoices", json={"customer_org_id": "cust-3", "line_items": []}, headers=_headers())
    assert empty.status_code == 422

    malformed = client.post(
        "/billing/invoices",
        json={"customer_org_id": "cust-3", "line_items": [{"description": "Data migration", "quantity": 1}]},
        headers=_headers(),
    )
    assert malformed.status_code == 422
