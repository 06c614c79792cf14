from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import events
from backoffice.business.catalog.models import ProductPricing
from backoffice.business.catalog.schemas import (
    AddOnCreate,
    AddOnPricingCreate,
    CouponCreate,
    CouponValidateRequest,
    FeatureCreate,
    PlanAddOnCreate,
    PlanCreate,
    PlanStatusUpdate,
    PricingCreate,
    UsageMeterCreate,
)
from backoffice.business.catalog.service import CatalogService
from backoffice.core.clock import FixedClock
from backoffice.core.database import Base
from backoffice.platform.security.context import AuthContext


NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


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
def reset_globals() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _ctx(organization_id: str | None = "org-1") -> AuthContext:
    return AuthContext(user_id="catalog-user", organization_id=organization_id, correlation_id="corr-catalog")


def _service() -> CatalogService:
    return CatalogService(clock=FixedClock(NOW))


def _active_plan(service: CatalogService, session: Session, ctx: AuthContext, code: str = "GROWTH"):
    plan = service.create_plan(session, ctx, PlanCreate(name="Growth", code=code, pricing_model="flat"))
    service.add_pricing(session, ctx, plan.id, PricingCreate(pricing_type="base", amount=10000, interval="monthly"))
    return service.set_plan_status(session, ctx, plan.id, PlanStatusUpdate(status="active"))


def test_create_plan_requires_organization(db_session: Session) -> None:
    service = _service()

    with pytest.raises(HTTPException) as exc_info:
        service.create_plan(db_session, _ctx(None), PlanCreate(name="Starter", code="STARTER", pricing_model="flat"))
    assert exc_info.value.status_code == 400


def test_create_plan_publishes_event_and_rejects_duplicate_code(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()

    plan = service.create_plan(db_session, ctx, PlanCreate(name="Starter", code="STARTER", pricing_model="flat"))
    assert plan.status == "draft"
    assert plan.organization_id == "org-1"
    assert events.events_of_type("catalog.plan.created")[-1]["correlation_id"] == "corr-catalog"

    with pytest.raises(HTTPException) as exc_info:
        service.create_plan(db_session, ctx, PlanCreate(name="Starter again", code="STARTER", pricing_model="flat"))
    assert exc_info.value.status_code == 409


def test_plan_activation_requires_pricing(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = service.create_plan(db_session, ctx, PlanCreate(name="Empty", code="EMPTY", pricing_model="flat"))

    with pytest.raises(HTTPException) as exc_info:
        service.set_plan_status(db_session, ctx, plan.id, PlanStatusUpdate(status="active"))
    assert exc_info.value.status_code == 422


def test_plan_status_transitions(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = _active_plan(service, db_session, ctx)
    assert plan.status == "active"

    archived = service.set_plan_status(db_session, ctx, plan.id, PlanStatusUpdate(status="archived"))
    assert archived.status == "archived"

    with pytest.raises(HTTPException) as exc_info:
        service.set_plan_status(db_session, ctx, plan.id, PlanStatusUpdate(status="active"))
    assert exc_info.value.status_code == 409

    with pytest.raises(HTTPException) as exc_info:
        service.add_pricing(db_session, ctx, plan.id, PricingCreate(pricing_type="base", amount=99000, interval="yearly"))
    assert exc_info.value.status_code == 409


def test_duplicate_pricing_row_is_rejected(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = _active_plan(service, db_session, ctx)

    with pytest.raises(HTTPException) as exc_info:
        service.add_pricing(db_session, ctx, plan.id, PricingCreate(pricing_type="base", amount=12000, interval="monthly"))
    assert exc_info.value.status_code == 409


def test_pricing_schema_validates_tiers_and_shape() -> None:
    with pytest.raises(ValidationError):
        PricingCreate(pricing_type="base", amount=1000)

    with pytest.raises(ValidationError):
        PricingCreate(pricing_type="regional", amount=1000, interval="monthly")

    with pytest.raises(ValidationError):
        PricingCreate(
            pricing_type="usage",
            usage_meter_id="1c7f7a1e-4d6f-4c55-9a0a-5f7d3f0e0a11",
            usage_tiers=[{"upTo": 1000, "unitPrice": 1}],
        )


def test_usage_pricing_round_trips_tier_table(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    meter = service.create_usage_meter(db_session, ctx, UsageMeterCreate(name="API Calls", unit="calls"))
    plan = service.create_plan(db_session, ctx, PlanCreate(name="Metered", code="METERED", pricing_model="usage"))

    row = service.add_pricing(
        db_session,
        ctx,
        plan.id,
        PricingCreate(
            pricing_type="usage",
            usage_meter_id=meter.id,
            usage_tiers=[
                {"upTo": 1000, "unitPrice": 0},
                {"upTo": 5000, "unitPrice": 10},
                {"upTo": None, "unitPrice": 5},
            ],
        ),
    )
    assert row.usage_meter_id == meter.id
    assert row.usage_tiers is not None
    assert [tier.unit_price for tier in row.usage_tiers] == [0, 10, 5]

    stored = db_session.get(ProductPricing, row.id)
    assert stored is not None
    assert stored.usage_tiers == [
        {"upTo": 1000, "unitPrice": 0},
        {"upTo": 5000, "unitPrice": 10},
        {"upTo": None, "unitPrice": 5},
    ]

    with pytest.raises(HTTPException) as exc_info:
        service.create_usage_meter(db_session, ctx, UsageMeterCreate(name="API Calls", unit="calls"))
    assert exc_info.value.status_code == 409


def test_corrupt_stored_tier_table_is_a_configuration_error(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    meter = service.create_usage_meter(db_session, ctx, UsageMeterCreate(name="Events", unit="events"))
    plan = service.create_plan(db_session, ctx, PlanCreate(name="Events", code="EVENTS", pricing_model="usage"))
    row = service.add_pricing(
        db_session,
        ctx,
        plan.id,
        PricingCreate(pricing_type="usage", usage_meter_id=meter.id, usage_tiers=[{"upTo": None, "unitPrice": 2}]),
    )

    stored = db_session.get(ProductPricing, row.id)
    assert stored is not None
    stored.usage_tiers = [{"upTo": 500, "unitPrice": 1}]
    db_session.commit()

    with pytest.raises(HTTPException) as exc_info:
        service.get_plan(db_session, ctx, plan.id)
    assert exc_info.value.status_code == 500


def test_attach_add_on_rules(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = _active_plan(service, db_session, ctx)
    support = service.create_add_on(db_session, ctx, AddOnCreate(name="Priority Support"))
    service.add_add_on_pricing(db_session, ctx, support.id, AddOnPricingCreate(pricing_type="base", amount=2000, interval="monthly"))

    link = service.attach_add_on(db_session, ctx, plan.id, PlanAddOnCreate(add_on_id=support.id))
    assert link.add_on_name == "Priority Support"
    assert link.billing_type == "billed_with_main"

    with pytest.raises(HTTPException) as exc_info:
        service.attach_add_on(db_session, ctx, plan.id, PlanAddOnCreate(add_on_id=support.id))
    assert exc_info.value.status_code == 409

    flat = service.create_add_on(db_session, ctx, AddOnCreate(name="Onboarding"))
    with pytest.raises(HTTPException) as exc_info:
        service.attach_add_on(db_session, ctx, plan.id, PlanAddOnCreate(add_on_id=flat.id, billing_type="consumable"))
    assert exc_info.value.status_code == 422

    legacy = service.create_add_on(db_session, ctx, AddOnCreate(name="Legacy", status="archived"))
    with pytest.raises(HTTPException) as exc_info:
        service.attach_add_on(db_session, ctx, plan.id, PlanAddOnCreate(add_on_id=legacy.id))
    assert exc_info.value.status_code == 422

    reloaded = service.get_plan(db_session, ctx, plan.id)
    assert [item.add_on_name for item in reloaded.add_ons] == ["Priority Support"]


def test_features_are_listed_in_display_order(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = _active_plan(service, db_session, ctx)
    service.add_feature(db_session, ctx, plan.id, FeatureCreate(name="SSO", display_order=2))
    service.add_feature(db_session, ctx, plan.id, FeatureCreate(name="Dashboards", display_order=1))

    reloaded = service.get_plan(db_session, ctx, plan.id)
    assert [feature.name for feature in reloaded.features] == ["Dashboards", "SSO"]


def test_plans_are_scoped_to_organization(db_session: Session) -> None:
    service = _service()
    _active_plan(service, db_session, _ctx("org-1"), code="ORG1")
    _active_plan(service, db_session, _ctx("org-2"), code="ORG2")

    assert [plan.code for plan in service.list_plans(db_session, _ctx("org-1"))] == ["ORG1"]
    assert [plan.code for plan in service.list_plans(db_session, _ctx("org-2"), plan_status="active")] == ["ORG2"]
    assert service.list_plans(db_session, _ctx("org-2"), plan_status="draft") == []


def test_coupon_codes_are_normalized_and_validated(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = _active_plan(service, db_session, ctx)
    other = _active_plan(service, db_session, ctx, code="OTHER")

    coupon = service.create_coupon(
        db_session,
        ctx,
        CouponCreate(code=" save20 ", discount_type="percentage", discount_value=20, applicable_plan_ids=[plan.id]),
    )
    assert coupon.code == "SAVE20"
    assert coupon.applicable_plan_ids == [str(plan.id)]

    with pytest.raises(HTTPException) as exc_info:
        service.create_coupon(db_session, ctx, CouponCreate(code="SAVE20", discount_type="fixed_amount", discount_value=500))
    assert exc_info.value.status_code == 409

    valid = service.validate_coupon(db_session, ctx, CouponValidateRequest(code="save20", plan_id=plan.id))
    assert valid.valid is True
    assert valid.reason is None

    wrong_plan = service.validate_coupon(db_session, ctx, CouponValidateRequest(code="SAVE20", plan_id=other.id))
    assert wrong_plan.valid is False
    assert wrong_plan.reason == "not_applicable_to_plan"

    with pytest.raises(HTTPException) as exc_info:
        service.validate_coupon(db_session, ctx, CouponValidateRequest(code="NOPE", plan_id=plan.id))
    assert exc_info.value.status_code == 404


def test_expired_coupon_is_reported_invalid(db_session: Session) -> None:
    service = _service()
    ctx = _ctx()
    plan = _active_plan(service, db_session, ctx)
    service.create_coupon(
        db_session,
        ctx,
        CouponCreate(code="LAUNCH", discount_type="fixed_amount", discount_value=500, expires_at=NOW - timedelta(days=1)),
    )

    result = service.validate_coupon(db_session, ctx, CouponValidateRequest(code="LAUNCH", plan_id=plan.id))
    assert result.valid is False
    assert result.reason == "expired"


def test_percentage_coupon_cannot_exceed_one_hundred() -> None:
    with pytest.raises(ValidationError):
        CouponCreate(code="TOO-MUCH", discount_type="percentage", discount_value=120)
