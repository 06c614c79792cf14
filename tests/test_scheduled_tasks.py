from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import events
from backoffice.business.billing.service import billing_service
from backoffice.business.catalog.schemas import PlanCreate, PlanStatusUpdate, PricingCreate
from backoffice.business.catalog.service import catalog_service
from backoffice.business.subscription.schemas import SubscriptionCreate
from backoffice.business.subscription.service import subscription_service
from backoffice.core import celery_app as tasks
from backoffice.core.clock import FixedClock
from backoffice.core.database import Base
from backoffice.platform.security.context import AuthContext


@pytest.fixture()
def session_factory(monkeypatch: pytest.MonkeyPatch) -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(tasks, "SessionLocal", SessionLocal)
    yield SessionLocal
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def clock(monkeypatch: pytest.MonkeyPatch) -> FixedClock:
    fixed = FixedClock(datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(catalog_service, "clock", fixed)
    monkeypatch.setattr(subscription_service, "clock", fixed)
    monkeypatch.setattr(billing_service, "clock", fixed)
    return fixed


@pytest.fixture(autouse=True)
def reset_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _ctx() -> AuthContext:
    return AuthContext(user_id="ops-user", organization_id="org-1", correlation_id="corr-tasks")


def _seed(session: Session) -> uuid.UUID:
    ctx = _ctx()
    plan = catalog_service.create_plan(session, ctx, PlanCreate(name="Ops", code="OPS", pricing_model="flat"))
    catalog_service.add_pricing(session, ctx, plan.id, PricingCreate(pricing_type="base", amount=6000, interval="monthly"))
    catalog_service.set_plan_status(session, ctx, plan.id, PlanStatusUpdate(status="active"))
    subscription = subscription_service.create_subscription(
        session, ctx, SubscriptionCreate(customer_org_id="cust-1", plan_id=plan.id)
    )
    invoice = billing_service.list_invoices(session, ctx, subscription_id=subscription.id)[0]
    billing_service.finalize(session, ctx, invoice.id)
    return subscription.id


def test_scheduled_tasks_skip_when_nothing_is_due(session_factory: sessionmaker, clock: FixedClock) -> None:
    session = session_factory()
    try:
        _seed(session)
    finally:
        session.close()

    assert tasks.refresh_overdue_invoices() == {"processed": 0, "failed": 0}
    assert tasks.roll_due_subscriptions() == {"processed": 0, "failed": 0}


def test_scheduled_tasks_mark_overdue_and_roll_periods(session_factory: sessionmaker, clock: FixedClock) -> None:
    session = session_factory()
    try:
        subscription_id = _seed(session)

        clock.advance_to(date(2026, 4, 2))
        assert tasks.refresh_overdue_invoices() == {"processed": 1, "failed": 0}
        assert tasks.roll_due_subscriptions() == {"processed": 1, "failed": 0}

        overdue_events = events.events_of_type("invoice.overdue")
        assert len(overdue_events) == 1
        assert overdue_events[0]["correlation_id"].startswith("refresh_overdue_invoices-")

        session.expire_all()
        subscription = subscription_service.get_subscription(session, _ctx(), subscription_id)
        assert subscription.status == "past_due"
        assert subscription.current_period_start == date(2026, 4, 1)
        assert subscription.current_period_end == date(2026, 5, 1)

        invoices = billing_service.list_invoices(session, _ctx(), subscription_id=subscription.id)
        assert sorted(invoice.status for invoice in invoices) == ["draft", "overdue"]

        assert tasks.roll_due_subscriptions() == {"processed": 0, "failed": 0}
    finally:
        session.close()
