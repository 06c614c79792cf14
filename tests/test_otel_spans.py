from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.main import app
from backoffice.otel import setup_inmemory_otel


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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("backoffice-billing")
    exporter.clear()
    return exporter


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


def _headers(correlation_id: str) -> dict[str, str]:
    return {"x-organization-id": "org-1", "X-Correlation-Id": correlation_id}


def _create_active_plan(client: TestClient, correlation_id: str) -> str:
    plan = client.post(
        "/catalog/plans",
        json={"name": "OTel Plan", "code": "OTEL", "pricing_model": "flat"},
        headers=_headers(correlation_id),
    )
    assert plan.status_code == 201
    plan_id = plan.json()["id"]
    client.post(
        f"/catalog/plans/{plan_id}/pricing",
        json={"pricing_type": "base", "amount": 3000, "interval": "monthly"},
        headers=_headers(correlation_id),
    )
    client.post(f"/catalog/plans/{plan_id}/status", json={"status": "active"}, headers=_headers(correlation_id))
    return plan_id


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/catalog/plans",
        json={"name": "Span Plan", "code": "SPAN", "pricing_model": "flat"},
        headers=_headers("otel-corr-1"),
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_pricing_and_invoice_spans(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    plan_id = _create_active_plan(client, "otel-sub-1")

    created = client.post(
        "/subscriptions",
        json={"customer_org_id": "cust-1", "plan_id": plan_id},
        headers=_headers("otel-sub-1"),
    )
    assert created.status_code == 201

    spans = span_exporter.get_finished_spans()
    pricing_spans = [span for span in spans if span.name == "pricing.resolve"]
    assert pricing_spans
    assert any(
        span.attributes.get("plan_id") == plan_id
        and span.attributes.get("billing_cycle") == "monthly"
        and span.attributes.get("mrr") == 3000
        for span in pricing_spans
    )

    invoice_spans = [span for span in spans if span.name == "invoice.generate"]
    assert invoice_spans
    assert any(
        span.attributes.get("subscription_id") == created.json()["id"] and span.attributes.get("total") == 3000
        for span in invoice_spans
    )
