from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from backoffice.business.catalog.schemas import (
    AddOnCreate,
    AddOnPricingCreate,
    AddOnRead,
    CouponCreate,
    CouponRead,
    CouponValidateRequest,
    CouponValidateResponse,
    FeatureCreate,
    FeatureRead,
    PlanAddOnCreate,
    PlanAddOnRead,
    PlanCreate,
    PlanRead,
    PlanStatusUpdate,
    PricingCreate,
    PricingRead,
    UsageMeterCreate,
    UsageMeterRead,
)
from backoffice.business.catalog.service import catalog_service
from backoffice.context import get_correlation_id
from backoffice.core.auth import AuthUser, get_current_user as get_auth_user
from backoffice.core.database import get_db
from backoffice.platform.security.context import AuthContext


router = APIRouter(prefix="/catalog", tags=["catalog"])


def get_catalog_auth_context(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    organization_id_header: str | None = Header(default=None, alias="x-organization-id"),
) -> AuthContext:
    return AuthContext.for_caller(
        auth_user.sub,
        auth_user.roles,
        organization_id=organization_id_header,
        correlation_id=get_correlation_id() or request.headers.get("x-correlation-id"),
    )


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> PlanRead:
    return catalog_service.create_plan(db, ctx, payload)


@router.get("/plans", response_model=list[PlanRead])
def list_plans(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> list[PlanRead]:
    return catalog_service.list_plans(db, ctx, plan_status=status_filter)


@router.get("/plans/{plan_id}", response_model=PlanRead)
def get_plan(
    plan_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> PlanRead:
    return catalog_service.get_plan(db, ctx, plan_id)


@router.post("/plans/{plan_id}/status", response_model=PlanRead)
def set_plan_status(
    plan_id: uuid.UUID,
    payload: PlanStatusUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> PlanRead:
    return catalog_service.set_plan_status(db, ctx, plan_id, payload)


@router.post("/plans/{plan_id}/pricing", response_model=PricingRead, status_code=status.HTTP_201_CREATED)
def add_pricing(
    plan_id: uuid.UUID,
    payload: PricingCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> PricingRead:
    return catalog_service.add_pricing(db, ctx, plan_id, payload)


@router.post("/plans/{plan_id}/features", response_model=FeatureRead, status_code=status.HTTP_201_CREATED)
def add_feature(
    plan_id: uuid.UUID,
    payload: FeatureCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> FeatureRead:
    return catalog_service.add_feature(db, ctx, plan_id, payload)


@router.post("/plans/{plan_id}/add-ons", response_model=PlanAddOnRead, status_code=status.HTTP_201_CREATED)
def attach_add_on(
    plan_id: uuid.UUID,
    payload: PlanAddOnCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> PlanAddOnRead:
    return catalog_service.attach_add_on(db, ctx, plan_id, payload)


@router.post("/add-ons", response_model=AddOnRead, status_code=status.HTTP_201_CREATED)
def create_add_on(
    payload: AddOnCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> AddOnRead:
    return catalog_service.create_add_on(db, ctx, payload)


@router.get("/add-ons", response_model=list[AddOnRead])
def list_add_ons(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> list[AddOnRead]:
    return catalog_service.list_add_ons(db, ctx)


@router.post("/add-ons/{add_on_id}/pricing", response_model=PricingRead, status_code=status.HTTP_201_CREATED)
def add_add_on_pricing(
    add_on_id: uuid.UUID,
    payload: AddOnPricingCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> PricingRead:
    return catalog_service.add_add_on_pricing(db, ctx, add_on_id, payload)


@router.post("/usage-meters", response_model=UsageMeterRead, status_code=status.HTTP_201_CREATED)
def create_usage_meter(
    payload: UsageMeterCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> UsageMeterRead:
    return catalog_service.create_usage_meter(db, ctx, payload)


@router.get("/usage-meters", response_model=list[UsageMeterRead])
def list_usage_meters(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> list[UsageMeterRead]:
    return catalog_service.list_usage_meters(db, ctx)


@router.post("/coupons", response_model=CouponRead, status_code=status.HTTP_201_CREATED)
def create_coupon(
    payload: CouponCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> CouponRead:
    return catalog_service.create_coupon(db, ctx, payload)


@router.get("/coupons", response_model=list[CouponRead])
def list_coupons(
    status_filter: str | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> list[CouponRead]:
    return catalog_service.list_coupons(db, ctx, coupon_status=status_filter)


@router.post("/coupons/validate", response_model=CouponValidateResponse)
def validate_coupon(
    payload: CouponValidateRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_catalog_auth_context),
) -> CouponValidateResponse:
    return catalog_service.validate_coupon(db, ctx, payload)
