from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.context import request_scope
from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.logging import JsonLogFormatter, TextLogFormatter
from backoffice.main import app
from backoffice.middleware.request_logging import level_for_status


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/catalog/plans/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123", "x-organization-id": "org-1"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "backoffice.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/catalog/plans/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_subscription_logs_carry_status_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    headers = {"X-Correlation-Id": "log-sub-1", "x-organization-id": "org-1"}

    plan = client.post("/catalog/plans", json={"name": "Log Plan", "code": "LOG", "pricing_model": "flat"}, headers=headers)
    plan_id = plan.json()["id"]
    client.post(
        f"/catalog/plans/{plan_id}/pricing",
        json={"pricing_type": "base", "amount": 1500, "interval": "monthly"},
        headers=headers,
    )
    client.post(f"/catalog/plans/{plan_id}/status", json={"status": "active"}, headers=headers)
    created = client.post("/subscriptions", json={"customer_org_id": "cust-1", "plan_id": plan_id}, headers=headers)
    assert created.status_code == 201

    subscription_records = [record for record in caplog.records if record.name == "backoffice.subscription"]
    assert any(
        record.getMessage() == "subscription.created"
        and getattr(record, "subscription_id", None) == created.json()["id"]
        and getattr(record, "new_status", None) == "active"
        and getattr(record, "mrr", None) == 1500
        and getattr(record, "correlation_id", None) == "log-sub-1"
        for record in subscription_records
    )

    billing_records = [record for record in caplog.records if record.name == "backoffice.billing"]
    assert any(
        record.getMessage() == "invoice.generated" and getattr(record, "total", None) == 1500
        for record in billing_records
    )


@pytest.mark.parametrize(
    ("status_code", "level"),
    [(200, logging.INFO), (404, logging.INFO), (409, logging.WARNING), (403, logging.WARNING), (503, logging.ERROR)],
)
def test_request_log_level_follows_status(status_code: int, level: int) -> None:
    assert level_for_status(status_code) == level


def test_json_formatter_renders_scope_and_billing_fields() -> None:
    with request_scope("fmt-1", "org-9"):
        record = logging.getLogger("backoffice.billing").makeRecord(
            "backoffice.billing",
            logging.INFO,
            __file__,
            1,
            "invoice.paid",
            (),
            None,
            extra={"invoice_id": "inv-1", "total": 4200, "error": "x" * 600},
        )

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "invoice.paid"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["organization_id"] == "org-9"
    assert payload["fields"]["invoice_id"] == "inv-1"
    assert payload["fields"]["total"] == 4200
    assert len(payload["fields"]["error"]) == 500

    text = TextLogFormatter().format(record)
    assert text.startswith("INFO    backoffice.billing invoice.paid correlation_id=fmt-1")
    assert "total=4200" in text
