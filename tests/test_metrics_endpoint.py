from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.main import app


HEADERS = {"x-organization-id": "org-1"}


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


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_billing_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    plan = client.post("/catalog/plans", json={"name": "Metrics", "code": "METRICS", "pricing_model": "flat"}, headers=HEADERS)
    assert plan.status_code == 201
    plan_id = plan.json()["id"]
    client.post(
        f"/catalog/plans/{plan_id}/pricing",
        json={"pricing_type": "base", "amount": 4200, "interval": "monthly"},
        headers=HEADERS,
    )
    client.post(f"/catalog/plans/{plan_id}/status", json={"status": "active"}, headers=HEADERS)

    created = client.post("/subscriptions", json={"customer_org_id": "cust-1", "plan_id": plan_id}, headers=HEADERS)
    assert created.status_code == 201
    canceled = client.post(f"/subscriptions/{created.json()['id']}/cancel", headers=HEADERS)
    assert canceled.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pricing_resolutions_total" in body
    assert "subscription_transitions_total" in body
    assert "invoices_generated_total" in body

    assert 'path="/health"' in body
    assert 'path="/subscriptions/{id}/cancel"' in body
    assert 'pricing_model="flat"' in body
    assert 'to_status="canceled"' in body


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_endpoint_requires_metrics_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
