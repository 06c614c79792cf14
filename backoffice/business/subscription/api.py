from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Header, Query, Request, status
from sqlalchemy.orm import Session

from backoffice.business.subscription.schemas import (
    PricePreviewRequest,
    PricePreviewResponse,
    StatusChangeRequest,
    SubscriptionActivityRead,
    SubscriptionCreate,
    SubscriptionRead,
    UsageRecordCreate,
    UsageRecordRead,
)
from backoffice.business.subscription.service import subscription_service
from backoffice.context import get_correlation_id
from backoffice.core.auth import AuthUser, get_current_user as get_auth_user
from backoffice.core.database import get_db
from backoffice.platform.security.context import AuthContext


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def get_subscription_auth_context(
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


@router.post("/price-preview", response_model=PricePreviewResponse)
def preview_price(
    payload: PricePreviewRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> PricePreviewResponse:
    return subscription_service.preview_price(db, ctx, payload)


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.create_subscription(db, ctx, payload)


@router.get("", response_model=list[SubscriptionRead])
def list_subscriptions(
    status_filter: str | None = Query(default=None, alias="status"),
    customer_org_id: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> list[SubscriptionRead]:
    return subscription_service.list_subscriptions(db, ctx, subscription_status=status_filter, customer_org_id=customer_org_id)


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.get_subscription(db, ctx, subscription_id)


@router.get("/{subscription_id}/activities", response_model=list[SubscriptionActivityRead])
def list_activities(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> list[SubscriptionActivityRead]:
    return subscription_service.list_activities(db, ctx, subscription_id)


@router.post("/{subscription_id}/past-due", response_model=SubscriptionRead)
def mark_past_due(
    subscription_id: uuid.UUID,
    payload: StatusChangeRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.mark_past_due(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/resolve-overdue", response_model=SubscriptionRead)
def resolve_overdue(
    subscription_id: uuid.UUID,
    payload: StatusChangeRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.mark_overdue_resolved(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: uuid.UUID,
    payload: StatusChangeRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.cancel(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(
    subscription_id: uuid.UUID,
    payload: StatusChangeRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.pause(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    subscription_id: uuid.UUID,
    payload: StatusChangeRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.resume(db, ctx, subscription_id, payload)


@router.post("/{subscription_id}/roll-period", response_model=SubscriptionRead)
def roll_period(
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> SubscriptionRead:
    return subscription_service.roll_period(db, ctx, subscription_id)


@router.post("/{subscription_id}/usage", response_model=UsageRecordRead, status_code=status.HTTP_201_CREATED)
def record_usage(
    subscription_id: uuid.UUID,
    payload: UsageRecordCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> UsageRecordRead:
    return subscription_service.record_usage(db, ctx, subscription_id, payload)


@router.get("/{subscription_id}/usage", response_model=list[UsageRecordRead])
def list_usage(
    subscription_id: uuid.UUID,
    period_start: date | None = Query(default=None),
    period_end: date | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_subscription_auth_context),
) -> list[UsageRecordRead]:
    return subscription_service.list_usage(db, ctx, subscription_id, period_start=period_start, period_end=period_end)
