from __future__ import annotations

import calendar
import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from backoffice import audit, events
from backoffice.business import pricing
from backoffice.business.catalog.models import Coupon, ProductAddOn, ProductAddOnPricing, ProductPlan, ProductPlanAddOn
from backoffice.business.catalog.service import CatalogService, catalog_service
from backoffice.business.pricing.errors import CouponRejected, InvalidUsageQuantity, PricingNotFoundForCycle
from backoffice.business.pricing.types import CouponTerms, CustomerDiscount, PricingInput, PricingResult
from backoffice.business.subscription.models import (
    LIVE_STATUSES,
    Subscription,
    SubscriptionActivity,
    SubscriptionAddOn,
    UsageHistory,
)
from backoffice.business.subscription.repository import (
    SubscriptionActivityRepository,
    SubscriptionRepository,
    UsageHistoryRepository,
)
from backoffice.business.subscription.schemas import (
    AddOnChargeRead,
    CustomerDiscountInput,
    PricePreviewRequest,
    PricePreviewResponse,
    StatusChangeRequest,
    SubscriptionActivityRead,
    SubscriptionAddOnRead,
    SubscriptionCreate,
    SubscriptionRead,
    UsageComponentRead,
    UsageRecordCreate,
    UsageRecordRead,
)
from backoffice.core.clock import Clock, system_clock
from backoffice.core.config import get_settings
from backoffice.metrics import observe_coupon_rejection, observe_pricing_resolution, observe_subscription_transition
from backoffice.otel import get_tracer, set_span_attributes
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError


logger = logging.getLogger("backoffice.subscription")
tracer = get_tracer("backoffice.subscription")


VALID_SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "canceled"},
    "trial": {"active", "canceled"},
    "active": {"past_due", "canceled", "paused"},
    "past_due": {"active", "canceled"},
    "paused": {"active"},
    "canceled": set(),
}
ROLLABLE_STATUSES = frozenset({"active", "past_due", "trial"})


def _customer_discount(payload: CustomerDiscountInput | None) -> CustomerDiscount | None:
    if payload is None:
        return None
    return CustomerDiscount(discount_type=payload.discount_type, value=payload.value, is_recurring=payload.is_recurring)


class InvoiceRef(Protocol):
    id: uuid.UUID
    invoice_number: str
    total: int


class SubscriptionInvoicer(Protocol):
    def invoice_subscription_period(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: Subscription,
        period_start: date,
        period_end: date,
        *,
        usage_start: date | None = None,
        usage_end: date | None = None,
        is_gating: bool = False,
    ) -> InvoiceRef: ...


@dataclass(slots=True)
class SubscriptionService:
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    activity_repository: SubscriptionActivityRepository = SubscriptionActivityRepository()
    usage_repository: UsageHistoryRepository = UsageHistoryRepository()
    catalog: CatalogService = field(default_factory=lambda: catalog_service)
    clock: Clock = system_clock
    invoicer: SubscriptionInvoicer | None = None

    def preview_price(self, session: Session, ctx: AuthContext, payload: PricePreviewRequest) -> PricePreviewResponse:
        plan = self.catalog.get_subscribable_plan(session, ctx, payload.plan_id)
        links = self._attached_add_ons(plan, payload.add_on_ids)
        coupon = self.catalog.find_coupon(session, ctx, payload.coupon_code) if payload.coupon_code else None
        terms = self.catalog.coupon_terms(coupon) if coupon is not None else None

        result = self._quote(
            plan,
            links,
            terms,
            cycle=payload.billing_cycle,
            seats=payload.seats,
            region=payload.region,
            customer_discount=_customer_discount(payload.customer_discount),
        )
        return PricePreviewResponse(
            plan_id=plan.id,
            billing_cycle=payload.billing_cycle,
            currency=result.currency,
            base_amount=result.base_amount,
            per_seat_amount=result.per_seat_amount,
            seat_quantity=result.seat_quantity,
            seat_amount=result.seat_amount,
            add_ons=[
                AddOnChargeRead(
                    add_on_id=charge.add_on_id,
                    name=charge.name,
                    billing_type=charge.billing_type,
                    quantity=charge.quantity,
                    unit_price=charge.unit_price,
                    amount=charge.amount,
                )
                for charge in result.add_on_charges
            ],
            usage_components=[
                UsageComponentRead(
                    name=component.name,
                    usage_meter_id=component.usage_meter_id,
                    unit=component.unit,
                    source=component.source,
                    tiers=list(component.tiers),
                    flat_unit_price=component.flat_unit_price,
                )
                for component in [*result.usage_components, *result.consumables]
            ],
            customer_discount=result.customer_discount,
            coupon_discount=result.coupon_discount,
            recurring_charge=result.recurring_charge,
            mrr=result.mrr,
            trial_days=self._trial_days(plan, terms),
            line_items=result.line_item_preview,
        )

    def create_subscription(self, session: Session, ctx: AuthContext, payload: SubscriptionCreate) -> SubscriptionRead:
        if ctx.organization_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization context required")

        plan = self.catalog.get_subscribable_plan(session, ctx, payload.plan_id)
        links = self._attached_add_ons(plan, payload.add_on_ids)
        coupon = self.catalog.find_coupon(session, ctx, payload.coupon_code) if payload.coupon_code else None
        terms = self.catalog.coupon_terms(coupon) if coupon is not None else None
        self._ensure_no_live_subscription(session, ctx.organization_id, payload.customer_org_id)

        result = self._quote(
            plan,
            links,
            terms,
            cycle=payload.billing_cycle,
            seats=payload.seats,
            region=payload.region,
            customer_discount=_customer_discount(payload.customer_discount),
        )

        today = self.clock.today()
        trial_days = self._trial_days(plan, terms)
        trial_end: date | None = None
        if payload.collection_method == "send_invoice":
            initial_status = "draft"
            period_end = self._period_end(today, payload.billing_cycle)
        elif trial_days > 0:
            initial_status = "trial"
            trial_end = today + timedelta(days=trial_days)
            period_end = trial_end
        else:
            initial_status = "active"
            period_end = self._period_end(today, payload.billing_cycle)

        sub_payload: dict[str, Any] = {
            "organization_id": ctx.organization_id,
            "customer_org_id": payload.customer_org_id,
            "subscription_number": self._next_number(session, ctx.organization_id),
            "plan_id": plan.id,
            "status": initial_status,
            "collection_method": payload.collection_method,
            "billing_cycle": payload.billing_cycle,
            "region": payload.region,
            "currency": result.currency,
            "current_period_start": today,
            "current_period_end": period_end,
            "trial_end": trial_end,
            "seats": payload.seats,
            "mrr": result.mrr,
            "coupon_id": coupon.id if coupon is not None else None,
            "free_cycles_remaining": terms.discount_value if terms is not None and terms.discount_type == "free_months" else 0,
            "customer_discount_type": payload.customer_discount.discount_type if payload.customer_discount else None,
            "customer_discount_value": payload.customer_discount.value if payload.customer_discount else None,
            "customer_discount_is_recurring": bool(payload.customer_discount and payload.customer_discount.is_recurring),
            "linked_deal_id": payload.linked_deal_id,
            "notes": payload.notes,
        }
        try:
            self.subscription_repository.validate_write_security(sub_payload, ctx, action="create")
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        try:
            subscription = Subscription(**sub_payload)
            subscription.coupon = coupon
            for link in links:
                subscription.add_ons.append(SubscriptionAddOn(plan_add_on=link, quantity=1))
            session.add(subscription)
            session.flush()

            self._record_activity(
                session,
                ctx,
                subscription,
                "created",
                f"Subscription {subscription.subscription_number} created on {plan.name}",
                new_status=initial_status,
                metadata={"mrr": result.mrr, "billing_cycle": payload.billing_cycle, "seats": payload.seats},
            )
            if coupon is not None and terms is not None:
                self.catalog.redeem_coupon(session, coupon)
                self._record_activity(
                    session,
                    ctx,
                    subscription,
                    "coupon_applied",
                    f"Coupon {coupon.code} applied ({pricing.coupons.describe(terms, result.currency)})",
                    metadata={"coupon_id": str(coupon.id), "discount": result.coupon_discount},
                )
            if initial_status in {"draft", "active"} and self.invoicer is not None:
                session.flush()
                invoice = self.invoicer.invoice_subscription_period(
                    session,
                    ctx,
                    subscription,
                    subscription.current_period_start,
                    subscription.current_period_end,
                    is_gating=initial_status == "draft",
                )
                self._record_activity(
                    session,
                    ctx,
                    subscription,
                    "invoice_created",
                    f"Invoice {invoice.invoice_number} created",
                    metadata={"invoice_id": str(invoice.id), "total": invoice.total},
                )
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription creation conflict")
        except HTTPException:
            session.rollback()
            raise

        observe_subscription_transition(None, initial_status)
        audit.record_status_change(
            ctx,
            entity_type="subscription",
            entity_id=subscription.id,
            organization_id=subscription.organization_id,
            old_status=None,
            new_status=initial_status,
            extra={"mrr": subscription.mrr},
        )
        logger.info(
            "subscription.created",
            extra={
                "subscription_id": str(subscription.id),
                "customer_org_id": subscription.customer_org_id,
                "plan_id": str(plan.id),
                "new_status": initial_status,
                "mrr": subscription.mrr,
            },
        )
        self._emit_subscription_event("subscription.created", subscription, ctx)
        return self.get_subscription(session, ctx, subscription.id)

    def activate_on_payment(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        *,
        paid_on: date | None = None,
        commit: bool = True,
    ) -> Subscription:
        """Move a draft or trial subscription to active once its gating invoice is paid.

        The current period is re-anchored at the payment date. Calling it on an already
        active subscription changes nothing and records nothing.
        """

        subscription = self._get_subscription(session, ctx, subscription_id)
        if subscription.status == "active":
            return subscription
        self._assert_transition(subscription.status, "active")
        self._ensure_no_live_subscription(
            session,
            subscription.organization_id,
            subscription.customer_org_id,
            exclude_id=subscription.id,
        )

        anchor = paid_on or self.clock.today()
        old_status = subscription.status
        subscription.status = "active"
        subscription.current_period_start = anchor
        subscription.current_period_end = self._period_end(anchor, subscription.billing_cycle)
        session.add(subscription)
        self._record_activity(
            session,
            ctx,
            subscription,
            "activated",
            "Subscription activated after invoice payment",
            old_status=old_status,
            new_status="active",
            metadata={"period_start": anchor.isoformat()},
        )
        self._after_transition(ctx, subscription, old_status, commit=commit, session=session)
        self._emit_subscription_event("subscription.activated", subscription, ctx)
        return subscription

    def roll_period(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        subscription = self._get_subscription(session, ctx, subscription_id)
        today = self.clock.today()
        if subscription.status not in ROLLABLE_STATUSES or today < subscription.current_period_end:
            return self._to_subscription_read(subscription)

        closed_start = subscription.current_period_start
        closed_end = subscription.current_period_end
        old_status = subscription.status
        subscription.current_period_start = closed_end
        subscription.current_period_end = self._period_end(closed_end, subscription.billing_cycle)
        if old_status == "trial":
            subscription.status = "active"
            self._record_activity(
                session,
                ctx,
                subscription,
                "status_changed",
                "Trial ended",
                old_status=old_status,
                new_status="active",
            )
        session.add(subscription)
        self._record_activity(
            session,
            ctx,
            subscription,
            "period_rolled",
            f"Billing period advanced to {subscription.current_period_start.isoformat()}",
            metadata={
                "previous_period_start": closed_start.isoformat(),
                "previous_period_end": closed_end.isoformat(),
                "period_end": subscription.current_period_end.isoformat(),
            },
        )

        if get_settings().auto_generate_renewal_invoice and self.invoicer is not None:
            try:
                invoice = self.invoicer.invoice_subscription_period(
                    session,
                    ctx,
                    subscription,
                    subscription.current_period_start,
                    subscription.current_period_end,
                    usage_start=closed_start,
                    usage_end=closed_end,
                )
            except HTTPException:
                session.rollback()
                raise
            self._record_activity(
                session,
                ctx,
                subscription,
                "invoice_created",
                f"Invoice {invoice.invoice_number} created",
                metadata={"invoice_id": str(invoice.id), "total": invoice.total},
            )

        if subscription.status != old_status:
            self._after_transition(ctx, subscription, old_status, commit=True, session=session)
        else:
            session.commit()
        logger.info(
            "subscription.period_rolled",
            extra={"subscription_id": str(subscription.id), "new_status": subscription.status},
        )
        self._emit_subscription_event("subscription.period_rolled", subscription, ctx)
        return self.get_subscription(session, ctx, subscription.id)

    def mark_past_due(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: StatusChangeRequest | None = None,
        *,
        commit: bool = True,
    ) -> SubscriptionRead:
        subscription = self._change_status(session, ctx, subscription_id, "past_due", payload, commit=commit)
        return self._to_subscription_read(subscription)

    def mark_overdue_resolved(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: StatusChangeRequest | None = None,
        *,
        commit: bool = True,
    ) -> SubscriptionRead:
        subscription = self._get_subscription(session, ctx, subscription_id)
        if subscription.status == "active":
            return self._to_subscription_read(subscription)
        if subscription.status != "past_due":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription is not past due")
        subscription = self._change_status(session, ctx, subscription_id, "active", payload, commit=commit)
        return self._to_subscription_read(subscription)

    def cancel(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: StatusChangeRequest | None = None,
    ) -> SubscriptionRead:
        return self._to_subscription_read(self._change_status(session, ctx, subscription_id, "canceled", payload, commit=True))

    def pause(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: StatusChangeRequest | None = None,
    ) -> SubscriptionRead:
        return self._to_subscription_read(self._change_status(session, ctx, subscription_id, "paused", payload, commit=True))

    def resume(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: StatusChangeRequest | None = None,
    ) -> SubscriptionRead:
        subscription = self._get_subscription(session, ctx, subscription_id)
        if subscription.status != "paused":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription is not paused")
        return self._to_subscription_read(self._change_status(session, ctx, subscription_id, "active", payload, commit=True))

    def record_usage(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        payload: UsageRecordCreate,
    ) -> UsageRecordRead:
        subscription = self._get_subscription(session, ctx, subscription_id)
        if subscription.status == "canceled":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription is canceled")
        if payload.quantity < 0:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="usage quantity must be >= 0")

        plan = self.catalog.get_plan_model(session, ctx, subscription.plan_id)
        if payload.usage_meter_id not in self._billable_meter_ids(plan, subscription):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="usage meter is not billed on this subscription",
            )

        period_end = payload.period_end
        if period_end is None:
            if subscription.current_period_start <= payload.period_start < subscription.current_period_end:
                period_end = subscription.current_period_end
            else:
                period_end = self._period_end(payload.period_start, subscription.billing_cycle)
        if period_end <= payload.period_start:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="period_end must be after period_start")

        usage_payload = {
            "organization_id": subscription.organization_id,
            "subscription_id": subscription.id,
            "usage_meter_id": payload.usage_meter_id,
            "period_start": payload.period_start,
            "period_end": period_end,
            "quantity": payload.quantity,
        }
        try:
            self.usage_repository.validate_write_security(usage_payload, ctx, action="create")
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        row = UsageHistory(**usage_payload)
        session.add(row)
        self._record_activity(
            session,
            ctx,
            subscription,
            "usage_recorded",
            f"Recorded {payload.quantity:,} units",
            metadata={"usage_meter_id": str(payload.usage_meter_id), "quantity": payload.quantity},
        )
        session.commit()
        session.refresh(row)
        logger.info("subscription.usage_recorded", extra={"subscription_id": str(subscription.id), "processed": payload.quantity})
        return UsageRecordRead.model_validate(row)

    def list_usage(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        *,
        period_start: date | None = None,
        period_end: date | None = None,
    ) -> list[UsageRecordRead]:
        subscription = self._get_subscription(session, ctx, subscription_id)
        stmt = select(UsageHistory).where(UsageHistory.subscription_id == subscription.id)
        if period_start is not None:
            stmt = stmt.where(UsageHistory.period_start >= period_start)
        if period_end is not None:
            stmt = stmt.where(UsageHistory.period_start < period_end)
        stmt = self.usage_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(UsageHistory.period_start.asc(), UsageHistory.recorded_at.asc())).all()
        return [UsageRecordRead.model_validate(row) for row in rows]

    def usage_for_period(self, session: Session, subscription: Subscription, period_start: date, period_end: date) -> dict[str, int]:
        rows = session.execute(
            select(UsageHistory.usage_meter_id, func.sum(UsageHistory.quantity))
            .where(
                and_(
                    UsageHistory.subscription_id == subscription.id,
                    UsageHistory.period_start >= period_start,
                    UsageHistory.period_start < period_end,
                )
            )
            .group_by(UsageHistory.usage_meter_id)
        ).all()
        return {str(meter_id): int(total or 0) for meter_id, total in rows}

    def price_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: Subscription,
        *,
        usage: Mapping[str, int] | None = None,
        free_cycle: bool = False,
        first_invoice: bool = False,
    ) -> PricingResult:
        plan = self.catalog.get_plan_model(session, ctx, subscription.plan_id)
        selections = tuple(self.catalog.add_on_selection(row.plan_add_on, row.quantity) for row in subscription.add_ons)
        coupon: Coupon | None = subscription.coupon
        return self.resolve(
            PricingInput(
                plan_id=str(plan.id),
                plan_name=plan.name,
                pricing_model=plan.pricing_model,  # type: ignore[arg-type]
                pricing=self.catalog.pricing_rows(plan),
                cycle=subscription.billing_cycle,  # type: ignore[arg-type]
                seats=subscription.seats,
                region=subscription.region,
                add_ons=selections,
                coupon=self.catalog.coupon_terms(coupon) if coupon is not None else None,
                customer_discount=self._stored_customer_discount(subscription, first_invoice=first_invoice),
                included_seats=get_settings().seat_included_count,
                free_cycle=free_cycle,
                usage=usage,
                currency=subscription.currency,
            ),
            coupon_locked_in=True,
        )

    def _quote(
        self,
        plan: ProductPlan,
        links: Sequence[ProductPlanAddOn],
        terms: CouponTerms | None,
        *,
        cycle: str,
        seats: int,
        region: str | None,
        customer_discount: CustomerDiscount | None = None,
    ) -> PricingResult:
        return self.resolve(
            PricingInput(
                plan_id=str(plan.id),
                plan_name=plan.name,
                pricing_model=plan.pricing_model,  # type: ignore[arg-type]
                pricing=self.catalog.pricing_rows(plan),
                cycle=cycle,  # type: ignore[arg-type]
                seats=seats,
                region=region,
                add_ons=tuple(self.catalog.add_on_selection(link) for link in links),
                coupon=terms,
                customer_discount=customer_discount,
                now=self.clock.now(),
                included_seats=get_settings().seat_included_count,
            )
        )

    def resolve(self, inp: PricingInput, *, coupon_locked_in: bool = False) -> PricingResult:
        with tracer.start_as_current_span("pricing.resolve") as span:
            set_span_attributes(
                span, {"plan_id": inp.plan_id, "billing_cycle": inp.cycle, "pricing_model": inp.pricing_model}
            )
            try:
                result = pricing.resolve(inp, coupon_locked_in=coupon_locked_in)
            except PricingNotFoundForCycle as exc:
                observe_pricing_resolution(inp.pricing_model, "not_found")
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
            except CouponRejected as exc:
                observe_pricing_resolution(inp.pricing_model, "coupon_rejected")
                observe_coupon_rejection(exc.reason)
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
            except InvalidUsageQuantity as exc:
                observe_pricing_resolution(inp.pricing_model, "invalid_usage")
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
            set_span_attributes(span, {"recurring_charge": result.recurring_charge, "mrr": result.mrr})
        observe_pricing_resolution(inp.pricing_model, "ok")
        return result

    def list_subscriptions(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        subscription_status: str | None = None,
        customer_org_id: str | None = None,
    ) -> list[SubscriptionRead]:
        stmt: Select[tuple[Subscription]] = select(Subscription).options(*self._load_options())
        if subscription_status is not None:
            stmt = stmt.where(Subscription.status == subscription_status)
        if customer_org_id is not None:
            stmt = stmt.where(Subscription.customer_org_id == customer_org_id)
        stmt = self.subscription_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(Subscription.created_at.desc())).all()
        return [self._to_subscription_read(row) for row in rows]

    def get_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        return self._to_subscription_read(self._get_subscription(session, ctx, subscription_id))

    def get_subscription_model(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> Subscription:
        return self._get_subscription(session, ctx, subscription_id)

    def list_activities(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> list[SubscriptionActivityRead]:
        subscription = self._get_subscription(session, ctx, subscription_id)
        rows = session.scalars(
            select(SubscriptionActivity)
            .where(SubscriptionActivity.subscription_id == subscription.id)
            .order_by(SubscriptionActivity.created_at.asc())
        ).all()
        return [SubscriptionActivityRead.model_validate(row) for row in rows]

    def due_for_rollover(self, session: Session, *, limit: int) -> list[uuid.UUID]:
        today = self.clock.today()
        return list(
            session.scalars(
                select(Subscription.id)
                .where(and_(Subscription.status.in_(ROLLABLE_STATUSES), Subscription.current_period_end <= today))
                .order_by(Subscription.current_period_end.asc())
                .limit(limit)
            ).all()
        )

    def _change_status(
        self,
        session: Session,
        ctx: AuthContext,
        subscription_id: uuid.UUID,
        target: str,
        payload: StatusChangeRequest | None,
        *,
        commit: bool,
    ) -> Subscription:
        subscription = self._get_subscription(session, ctx, subscription_id)
        self._assert_transition(subscription.status, target)
        if target in LIVE_STATUSES and subscription.status not in LIVE_STATUSES:
            self._ensure_no_live_subscription(
                session,
                subscription.organization_id,
                subscription.customer_org_id,
                exclude_id=subscription.id,
            )

        try:
            self.subscription_repository.validate_write_security(
                {"status": target},
                ctx,
                existing_scope={"organization_id": subscription.organization_id},
                action="update",
            )
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

        old_status = subscription.status
        subscription.status = target
        session.add(subscription)
        reason = payload.reason if payload is not None else None
        self._record_activity(
            session,
            ctx,
            subscription,
            "status_changed",
            f"Status changed from {old_status} to {target}" + (f": {reason}" if reason else ""),
            old_status=old_status,
            new_status=target,
            metadata={"reason": reason} if reason else None,
        )
        self._after_transition(ctx, subscription, old_status, commit=commit, session=session)
        self._emit_subscription_event("subscription.status_changed", subscription, ctx, old_status=old_status)
        return subscription

    def _after_transition(
        self,
        ctx: AuthContext,
        subscription: Subscription,
        old_status: str,
        *,
        commit: bool,
        session: Session,
    ) -> None:
        if commit:
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="customer already has a live subscription")
        else:
            session.flush()

        observe_subscription_transition(old_status, subscription.status)
        audit.record_status_change(
            ctx,
            entity_type="subscription",
            entity_id=subscription.id,
            organization_id=subscription.organization_id,
            old_status=old_status,
            new_status=subscription.status,
        )
        logger.info(
            "subscription.status_changed",
            extra={"subscription_id": str(subscription.id), "old_status": old_status, "new_status": subscription.status},
        )

    def _ensure_no_live_subscription(
        self,
        session: Session,
        organization_id: str,
        customer_org_id: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(Subscription).where(
            and_(
                Subscription.organization_id == organization_id,
                Subscription.customer_org_id == customer_org_id,
                Subscription.status.in_(LIVE_STATUSES),
            )
        )
        if exclude_id is not None:
            stmt = stmt.where(Subscription.id != exclude_id)
        existing = session.scalar(stmt.limit(1))
        if existing is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"customer already has a live subscription ({existing.subscription_number})",
            )

    @staticmethod
    def _attached_add_ons(plan: ProductPlan, add_on_ids: Sequence[uuid.UUID]) -> list[ProductPlanAddOn]:
        by_add_on = {link.add_on_id: link for link in plan.add_on_links}
        links: list[ProductPlanAddOn] = []
        for add_on_id in dict.fromkeys(add_on_ids):
            link = by_add_on.get(add_on_id)
            if link is None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"add-on {add_on_id} is not attached to plan {plan.code}",
                )
            if link.add_on.status != "active":
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"add-on {link.add_on.name} is not active")
            links.append(link)
        return links

    @staticmethod
    def _billable_meter_ids(plan: ProductPlan, subscription: Subscription) -> set[uuid.UUID]:
        meter_ids = {row.usage_meter_id for row in plan.pricing if row.pricing_type == "usage" and row.usage_meter_id}
        for row in subscription.add_ons:
            meter_ids.update(item.usage_meter_id for item in row.plan_add_on.add_on.pricing if item.usage_meter_id)
        return meter_ids

    @staticmethod
    def _stored_customer_discount(subscription: Subscription, *, first_invoice: bool) -> CustomerDiscount | None:
        if not subscription.customer_discount_type or not subscription.customer_discount_value:
            return None
        if not subscription.customer_discount_is_recurring and not first_invoice:
            return None
        return CustomerDiscount(
            discount_type=subscription.customer_discount_type,  # type: ignore[arg-type]
            value=subscription.customer_discount_value,
            is_recurring=subscription.customer_discount_is_recurring,
        )

    @staticmethod
    def _trial_days(plan: ProductPlan, terms: CouponTerms | None) -> int:
        extension = terms.discount_value if terms is not None and terms.discount_type == "trial_extension" else 0
        return plan.trial_days + extension

    def _get_subscription(self, session: Session, ctx: AuthContext, subscription_id: uuid.UUID) -> Subscription:
        subscription = self.subscription_repository.get_scoped(session, ctx, subscription_id, options=self._load_options())
        if subscription is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found")
        return subscription

    @staticmethod
    def _load_options() -> tuple[Any, ...]:
        return (
            selectinload(Subscription.add_ons)
            .selectinload(SubscriptionAddOn.plan_add_on)
            .selectinload(ProductPlanAddOn.add_on)
            .selectinload(ProductAddOn.pricing)
            .selectinload(ProductAddOnPricing.usage_meter),
            selectinload(Subscription.coupon),
        )

    @staticmethod
    def _assert_transition(current: str, target: str) -> None:
        allowed = VALID_SUBSCRIPTION_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"invalid subscription transition {current} -> {target}")

    def _record_activity(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: Subscription,
        activity_type: str,
        description: str,
        *,
        old_status: str | None = None,
        new_status: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        activity_payload = {
            "subscription_id": subscription.id,
            "activity_type": activity_type,
            "description": description,
            "old_status": old_status,
            "new_status": new_status,
            "user_id": ctx.user_id,
            "metadata_json": metadata,
        }
        try:
            self.activity_repository.validate_write_security(
                activity_payload,
                ctx,
                existing_scope={"organization_id": subscription.organization_id},
                action="create",
            )
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        session.add(SubscriptionActivity(**activity_payload))

    def _emit_subscription_event(
        self,
        event_type: str,
        subscription: Subscription,
        ctx: AuthContext,
        *,
        old_status: str | None = None,
    ) -> None:
        events.publish(
            {
                "event_type": event_type,
                "subscription_id": str(subscription.id),
                "organization_id": subscription.organization_id,
                "customer_org_id": subscription.customer_org_id,
                "status": subscription.status,
                "old_status": old_status,
                "mrr": subscription.mrr,
                "period_start": subscription.current_period_start.isoformat(),
                "period_end": subscription.current_period_end.isoformat(),
                "correlation_id": ctx.correlation_id,
            }
        )

    def _period_end(self, start: date, billing_cycle: str) -> date:
        if billing_cycle == "monthly":
            return self._add_months(start, 1)
        if billing_cycle == "yearly":
            return self._add_months(start, 12)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid billing cycle")

    @staticmethod
    def _add_months(base_date: date, months: int) -> date:
        month_index = base_date.month - 1 + months
        year = base_date.year + (month_index // 12)
        month = month_index % 12 + 1
        day = min(base_date.day, calendar.monthrange(year, month)[1])
        return date(year, month, day)

    def _to_subscription_read(self, subscription: Subscription) -> SubscriptionRead:
        return SubscriptionRead(
            id=subscription.id,
            organization_id=subscription.organization_id,
            customer_org_id=subscription.customer_org_id,
            subscription_number=subscription.subscription_number,
            plan_id=subscription.plan_id,
            status=subscription.status,
            collection_method=subscription.collection_method,
            billing_cycle=subscription.billing_cycle,
            region=subscription.region,
            currency=subscription.currency,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            trial_end=subscription.trial_end,
            seats=subscription.seats,
            mrr=subscription.mrr,
            coupon_id=subscription.coupon_id,
            free_cycles_remaining=subscription.free_cycles_remaining,
            customer_discount=(
                CustomerDiscountInput(
                    discount_type=subscription.customer_discount_type,  # type: ignore[arg-type]
                    value=subscription.customer_discount_value,
                    is_recurring=subscription.customer_discount_is_recurring,
                )
                if subscription.customer_discount_type and subscription.customer_discount_value
                else None
            ),
            linked_deal_id=subscription.linked_deal_id,
            notes=subscription.notes,
            created_at=subscription.created_at,
            updated_at=subscription.updated_at,
            add_ons=[
                SubscriptionAddOnRead(
                    id=row.id,
                    plan_add_on_id=row.plan_add_on_id,
                    add_on_id=row.plan_add_on.add_on_id,
                    name=row.plan_add_on.add_on.name,
                    billing_type=row.plan_add_on.billing_type,
                    quantity=row.quantity,
                )
                for row in subscription.add_ons
            ],
        )

    def _next_number(self, session: Session, organization_id: str) -> str:
        counter = session.scalar(select(func.count()).select_from(Subscription).where(Subscription.organization_id == organization_id)) or 0
        return f"SUB-{get_settings().subscription_number_start + counter}"


subscription_service = SubscriptionService()
