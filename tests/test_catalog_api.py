from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import events
from backoffice.core.auth import AuthUser, get_current_user
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
        return AuthUser(sub="catalog-user", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    events.published_events.clear()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    events.published_events.clear()


def _headers(organization_id: str = "org-1") -> dict[str, str]:
    return {"x-organization-id": organization_id}


def _create_active_plan(client: TestClient, code: str = "GROWTH") -> dict:
    plan = client.post(
        "/catalog/plans",
        json={"name": "Growth", "code": code, "pricing_model": "flat", "trial_days": 0},
        headers=_headers(),
    )
    assert plan.status_code == 201
    plan_id = plan.json()["id"]

    pricing = client.post(
        f"/catalog/plans/{plan_id}/pricing",
        json={"pricing_type": "base", "amount": 10000, "interval": "monthly", "currency": "usd"},
        headers=_headers(),
    )
    assert pricing.status_code == 201
    assert pricing.json()["currency"] == "USD"

    activated = client.post(f"/catalog/plans/{plan_id}/status", json={"status": "active"}, headers=_headers())
    assert activated.status_code == 200
    return activated.json()


def test_plan_lifecycle_over_http(client: TestClient) -> None:
    plan = _create_active_plan(client)
    assert plan["status"] == "active"
    assert [row["amount"] for row in plan["pricing"]] == [10000]

    listed = client.get("/catalog/plans", params={"status": "active"}, headers=_headers())
    assert listed.status_code == 200
    assert [item["code"] for item in listed.json()] == ["GROWTH"]

    drafts = client.get("/catalog/plans", params={"status": "draft"}, headers=_headers())
    assert drafts.json() == []

    fetched = client.get(f"/catalog/plans/{plan['id']}", headers=_headers())
    assert fetched.status_code == 200
    assert fetched.json()["code"] == "GROWTH"


def test_plan_requires_organization_header(client: TestClient) -> None:
    response = client.post("/catalog/plans", json={"name": "Orphan", "code": "ORPHAN", "pricing_model": "flat"})
    assert response.status_code == 400


def test_plans_are_hidden_from_other_organizations(client: TestClient) -> None:
    plan = _create_active_plan(client)

    response = client.get(f"/catalog/plans/{plan['id']}", headers=_headers("org-2"))
    assert response.status_code == 404


def test_invalid_tier_table_is_rejected(client: TestClient) -> None:
    plan = client.post(
        "/catalog/plans",
        json={"name": "Metered", "code": "METERED", "pricing_model": "usage"},
        headers=_headers(),
    )
    meter = client.post("/catalog/usage-meters", json={"name": "API Calls", "unit": "calls"}, headers=_headers())
    assert meter.status_code == 201

    unordered = client.post(
        f"/catalog/plans/{plan.json()['id']}/pricing",
        json={
            "pricing_type": "usage",
            "usage_meter_id": meter.json()["id"],
            "usage_tiers": [
                {"upTo": 5000, "unitPrice": 10},
                {"upTo": 1000, "unitPrice": 0},
                {"upTo": None, "unitPrice": 5},
            ],
        },
        headers=_headers(),
    )
    assert unordered.status_code == 422

    valid = client.post(
        f"/catalog/plans/{plan.json()['id']}/pricing",
        json={
            "pricing_type": "usage",
            "usage_meter_id": meter.json()["id"],
            "usage_tiers": [
                {"upTo": 1000, "unitPrice": 0},
                {"upTo": 5000, "unitPrice": 10},
                {"upTo": None, "unitPrice": 5},
            ],
        },
        headers=_headers(),
    )
    assert valid.status_code == 201
    assert valid.json()["usage_tiers"][0] == {"upTo": 1000, "unitPrice": 0}


def test_add_on_attachment_over_http(client: TestClient) -> None:
    plan = _create_active_plan(client)
    add_on = client.post("/catalog/add-ons", json={"name": "Priority Support"}, headers=_headers())
    assert add_on.status_code == 201

    pricing = client.post(
        f"/catalog/add-ons/{add_on.json()['id']}/pricing",
        json={"pricing_type": "base", "amount": 2000, "interval": "monthly"},
        headers=_headers(),
    )
    assert pricing.status_code == 201

    attached = client.post(
        f"/catalog/plans/{plan['id']}/add-ons",
        json={"add_on_id": add_on.json()["id"], "billing_type": "billed_with_main"},
        headers=_headers(),
    )
    assert attached.status_code == 201
    assert attached.json()["add_on_name"] == "Priority Support"

    duplicate = client.post(
        f"/catalog/plans/{plan['id']}/add-ons",
        json={"add_on_id": add_on.json()["id"]},
        headers=_headers(),
    )
    assert duplicate.status_code == 409

    listed = client.get("/catalog/add-ons", headers=_headers())
    assert [item["name"] for item in listed.json()] == ["Priority Support"]


def test_coupon_validation_over_http(client: TestClient) -> None:
    plan = _create_active_plan(client)
    coupon = client.post(
        "/catalog/coupons",
        json={"code": "save20", "discount_type": "percentage", "discount_value": 20, "max_redemptions": 5},
        headers=_headers(),
    )
    assert coupon.status_code == 201
    assert coupon.json()["code"] == "SAVE20"
    assert coupon.json()["redemption_count"] == 0

    validated = client.post(
        "/catalog/coupons/validate",
        json={"code": "Save20", "plan_id": plan["id"]},
        headers=_headers(),
    )
    assert validated.status_code == 200
    assert validated.json()["valid"] is True
    assert validated.json()["discount_value"] == 20

    unknown = client.post(
        "/catalog/coupons/validate",
        json={"code": "MISSING", "plan_id": plan["id"]},
        headers=_headers(),
    )
    assert unknown.status_code == 404

    over_limit = client.post(
        "/catalog/coupons",
        json={"code": "HALF", "discount_type": "percentage", "discount_value": 150},
        headers=_headers(),
    )
    assert over_limit.status_code == 422

    active = client.get("/catalog/coupons", params={"status": "active"}, headers=_headers())
    assert [item["code"] for item in active.json()] == ["SAVE20"]
