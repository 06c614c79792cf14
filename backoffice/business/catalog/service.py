from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from backoffice import events
from backoffice.business.catalog.models import (
    Coupon,
    ProductAddOn,
    ProductAddOnPricing,
    ProductFeature,
    ProductPlan,
    ProductPlanAddOn,
    ProductPricing,
    UsageMeter,
)
from backoffice.business.catalog.repository import (
    CouponRepository,
    ProductAddOnRepository,
    ProductPlanRepository,
    ProductPricingRepository,
    UsageMeterRepository,
)
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
from backoffice.business.pricing import coupons
from backoffice.business.pricing.errors import InvalidTierTable
from backoffice.business.pricing.tiers import dump_tier_table, parse_tier_table
from backoffice.business.pricing.types import AddOnSelection, CouponTerms, PricingRow, UsageTier
from backoffice.core.clock import Clock, system_clock
from backoffice.metrics import observe_coupon_redemption, observe_coupon_rejection
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError


logger = logging.getLogger("backoffice.catalog")


VALID_PLAN_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"active", "archived"},
    "active": {"archived"},
    "archived": set(),
}


def _forbidden(exc: AuthorizationError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


@dataclass(slots=True)
class CatalogService:
    plan_repository: ProductPlanRepository = ProductPlanRepository()
    pricing_repository: ProductPricingRepository = ProductPricingRepository()
    add_on_repository: ProductAddOnRepository = ProductAddOnRepository()
    usage_meter_repository: UsageMeterRepository = UsageMeterRepository()
    coupon_repository: CouponRepository = CouponRepository()
    clock: Clock = system_clock

    def create_plan(self, session: Session, ctx: AuthContext, payload: PlanCreate) -> PlanRead:
        self._require_organization(ctx)
        data = {"organization_id": ctx.organization_id, **payload.model_dump(mode="python")}
        try:
            self.plan_repository.validate_write_security(data, ctx, action="create")
        except AuthorizationError as exc:
            raise _forbidden(exc)

        plan = ProductPlan(**data)
        session.add(plan)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="plan code already exists")

        events.publish({"event_type": "catalog.plan.created", "plan_id": str(plan.id), "correlation_id": ctx.correlation_id})
        return self.get_plan(session, ctx, plan.id)

    def set_plan_status(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID, payload: PlanStatusUpdate) -> PlanRead:
        plan = self.get_plan_model(session, ctx, plan_id)
        if payload.status != plan.status:
            allowed = VALID_PLAN_TRANSITIONS.get(plan.status, set())
            if payload.status not in allowed:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"invalid plan transition {plan.status} -> {payload.status}",
                )
            if payload.status == "active" and not plan.pricing:
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="plan has no pricing")
            plan.status = payload.status
            session.add(plan)
            session.commit()
            logger.info("catalog.plan.status_changed", extra={"plan_id": str(plan.id), "new_status": plan.status})
        return self.get_plan(session, ctx, plan.id)

    def add_pricing(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID, payload: PricingCreate) -> PricingRead:
        plan = self.get_plan_model(session, ctx, plan_id)
        if plan.status == "archived":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="plan is archived")
        if payload.usage_meter_id is not None:
            self._get_meter(session, ctx, payload.usage_meter_id)
        duplicate = next(
            (
                row
                for row in plan.pricing
                if row.pricing_type == payload.pricing_type
                and row.interval == payload.interval
                and (row.region or "").lower() == (payload.region or "").lower()
                and row.usage_meter_id == payload.usage_meter_id
            ),
            None,
        )
        if duplicate is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="pricing row already exists for this cycle")

        row_payload = self._pricing_payload(payload)
        row_payload.update({"plan_id": plan.id, "region": payload.region})
        try:
            self.pricing_repository.validate_write_security(
                row_payload,
                ctx,
                existing_scope={"organization_id": plan.organization_id},
                action="create",
            )
        except AuthorizationError as exc:
            raise _forbidden(exc)

        row = ProductPricing(**row_payload)
        session.add(row)
        session.commit()
        session.refresh(row)
        return self._to_pricing_read(row, owner_id=plan.id)

    def add_feature(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID, payload: FeatureCreate) -> FeatureRead:
        plan = self.get_plan_model(session, ctx, plan_id)
        feature = ProductFeature(plan_id=plan.id, **payload.model_dump(mode="python"))
        session.add(feature)
        session.commit()
        session.refresh(feature)
        return FeatureRead.model_validate(feature)

    def list_plans(self, session: Session, ctx: AuthContext, *, plan_status: str | None = None) -> list[PlanRead]:
        stmt: Select[tuple[ProductPlan]] = select(ProductPlan).options(*self._plan_load_options())
        if plan_status is not None:
            stmt = stmt.where(ProductPlan.status == plan_status)
        stmt = self.plan_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(ProductPlan.created_at.desc())).all()
        return [self._to_plan_read(row) for row in rows]

    def get_plan(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID) -> PlanRead:
        return self._to_plan_read(self.get_plan_model(session, ctx, plan_id))

    def get_plan_model(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID) -> ProductPlan:
        plan = self.plan_repository.get_scoped(session, ctx, plan_id, options=self._plan_load_options())
        if plan is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="plan not found")
        return plan

    def get_subscribable_plan(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID) -> ProductPlan:
        plan = self.get_plan_model(session, ctx, plan_id)
        if plan.status != "active":
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"plan is {plan.status} and cannot be subscribed to",
            )
        return plan

    def create_usage_meter(self, session: Session, ctx: AuthContext, payload: UsageMeterCreate) -> UsageMeterRead:
        self._require_organization(ctx)
        meter = UsageMeter(organization_id=ctx.organization_id, **payload.model_dump(mode="python"))
        session.add(meter)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="usage meter already exists")
        session.refresh(meter)
        return UsageMeterRead.model_validate(meter)

    def list_usage_meters(self, session: Session, ctx: AuthContext) -> list[UsageMeterRead]:
        stmt = self.usage_meter_repository.apply_scope_query(select(UsageMeter), ctx)
        rows = session.scalars(stmt.order_by(UsageMeter.name.asc())).all()
        return [UsageMeterRead.model_validate(row) for row in rows]

    def create_add_on(self, session: Session, ctx: AuthContext, payload: AddOnCreate) -> AddOnRead:
        self._require_organization(ctx)
        add_on = ProductAddOn(organization_id=ctx.organization_id, **payload.model_dump(mode="python"))
        session.add(add_on)
        session.commit()
        return self._to_add_on_read(self._get_add_on(session, ctx, add_on.id))

    def add_add_on_pricing(
        self,
        session: Session,
        ctx: AuthContext,
        add_on_id: uuid.UUID,
        payload: AddOnPricingCreate,
    ) -> PricingRead:
        add_on = self._get_add_on(session, ctx, add_on_id)
        if payload.usage_meter_id is not None:
            self._get_meter(session, ctx, payload.usage_meter_id)
        row = ProductAddOnPricing(add_on_id=add_on.id, **self._pricing_payload(payload))
        session.add(row)
        session.commit()
        session.refresh(row)
        return self._to_pricing_read(row, owner_id=add_on.id)

    def list_add_ons(self, session: Session, ctx: AuthContext) -> list[AddOnRead]:
        stmt = select(ProductAddOn).options(selectinload(ProductAddOn.pricing))
        stmt = self.add_on_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(ProductAddOn.created_at.desc())).all()
        return [self._to_add_on_read(row) for row in rows]

    def attach_add_on(self, session: Session, ctx: AuthContext, plan_id: uuid.UUID, payload: PlanAddOnCreate) -> PlanAddOnRead:
        plan = self.get_plan_model(session, ctx, plan_id)
        add_on = self._get_add_on(session, ctx, payload.add_on_id)
        if add_on.status == "archived":
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="add-on is archived")
        if payload.billing_type == "consumable" and not any(row.usage_meter_id for row in add_on.pricing):
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="consumable add-ons need usage-metered pricing",
            )

        link = ProductPlanAddOn(plan_id=plan.id, **payload.model_dump(mode="python"))
        session.add(link)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="add-on already attached to plan")
        session.refresh(link)
        return self._to_plan_add_on_read(link)

    def create_coupon(self, session: Session, ctx: AuthContext, payload: CouponCreate) -> CouponRead:
        self._require_organization(ctx)
        data = payload.model_dump(mode="python")
        if data["applicable_plan_ids"] is not None:
            data["applicable_plan_ids"] = [str(item) for item in data["applicable_plan_ids"]]
        coupon = Coupon(organization_id=ctx.organization_id, **data)
        session.add(coupon)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="coupon code already exists")
        session.refresh(coupon)
        return CouponRead.model_validate(coupon)

    def list_coupons(self, session: Session, ctx: AuthContext, *, coupon_status: str | None = None) -> list[CouponRead]:
        stmt = select(Coupon)
        if coupon_status is not None:
            stmt = stmt.where(Coupon.status == coupon_status)
        stmt = self.coupon_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(Coupon.created_at.desc())).all()
        return [CouponRead.model_validate(row) for row in rows]

    def validate_coupon(self, session: Session, ctx: AuthContext, payload: CouponValidateRequest) -> CouponValidateResponse:
        code = coupons.normalize_code(payload.code)
        coupon = self.find_coupon(session, ctx, code)
        self.get_plan_model(session, ctx, payload.plan_id)
        result = coupons.validate(self.coupon_terms(coupon), str(payload.plan_id), self.clock.now())
        if not result.ok:
            observe_coupon_rejection(result.reason or "disabled")
        return CouponValidateResponse(
            code=coupon.code,
            valid=result.ok,
            reason=result.reason,
            discount_type=coupon.discount_type,
            discount_value=coupon.discount_value,
        )

    def find_coupon(self, session: Session, ctx: AuthContext, code: str) -> Coupon:
        stmt = select(Coupon).where(Coupon.code == coupons.normalize_code(code))
        if ctx.organization_id is not None:
            stmt = stmt.where(Coupon.organization_id == ctx.organization_id)
        coupon = session.scalar(self.coupon_repository.apply_scope_query(stmt, ctx))
        if coupon is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="coupon not found")
        return coupon

    def redeem_coupon(self, session: Session, coupon: Coupon) -> None:
        """Increment the redemption count in one conditional UPDATE; no commit."""

        result = session.execute(
            update(Coupon)
            .where(
                and_(
                    Coupon.id == coupon.id,
                    Coupon.status == "active",
                    or_(Coupon.max_redemptions.is_(None), Coupon.redemption_count < Coupon.max_redemptions),
                )
            )
            .values(redemption_count=Coupon.redemption_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            observe_coupon_rejection("redemptions_exhausted")
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="coupon redemption limit reached")
        observe_coupon_redemption(coupon.discount_type)

    @staticmethod
    def coupon_terms(coupon: Coupon) -> CouponTerms:
        return CouponTerms(
            code=coupon.code,
            discount_type=coupon.discount_type,  # type: ignore[arg-type]
            discount_value=coupon.discount_value,
            status=coupon.status,  # type: ignore[arg-type]
            applicable_plan_ids=tuple(coupon.applicable_plan_ids) if coupon.applicable_plan_ids is not None else None,
            max_redemptions=coupon.max_redemptions,
            redemption_count=coupon.redemption_count,
            expires_at=coupon.expires_at,
        )

    def pricing_rows(self, plan: ProductPlan) -> tuple[PricingRow, ...]:
        return tuple(self._to_pricing_row(row, owner_id=plan.id) for row in plan.pricing)

    def add_on_selection(self, link: ProductPlanAddOn, quantity: int = 1) -> AddOnSelection:
        add_on = link.add_on
        return AddOnSelection(
            attachment_id=str(link.id),
            add_on_id=str(add_on.id),
            name=add_on.name,
            pricing_model=add_on.pricing_model,  # type: ignore[arg-type]
            billing_type=link.billing_type,  # type: ignore[arg-type]
            pricing=tuple(self._to_pricing_row(row, owner_id=add_on.id) for row in add_on.pricing),
            quantity=quantity,
            display_order=link.display_order,
        )

    def _to_pricing_row(self, row: ProductPricing | ProductAddOnPricing, *, owner_id: uuid.UUID) -> PricingRow:
        meter = row.usage_meter
        return PricingRow(
            pricing_type=row.pricing_type,  # type: ignore[arg-type]
            amount=row.amount,
            currency=row.currency,
            interval=row.interval,  # type: ignore[arg-type]
            region=getattr(row, "region", None),
            per_seat_amount=row.per_seat_amount,
            usage_meter_id=str(row.usage_meter_id) if row.usage_meter_id is not None else None,
            usage_meter_name=meter.name if meter is not None else None,
            usage_unit=meter.unit if meter is not None else None,
            usage_tiers=self._stored_tiers(row.usage_tiers, owner_id=owner_id),
        )

    @staticmethod
    def _stored_tiers(raw: list[dict[str, Any]] | None, *, owner_id: uuid.UUID) -> tuple[UsageTier, ...]:
        try:
            return parse_tier_table(raw)
        except InvalidTierTable as exc:
            logger.error("catalog.invalid_tier_table", extra={"plan_id": str(owner_id), "error": str(exc)})
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="catalog configuration error")

    @staticmethod
    def _pricing_payload(payload: PricingCreate | AddOnPricingCreate) -> dict[str, Any]:
        return {
            "pricing_type": payload.pricing_type,
            "currency": payload.currency,
            "amount": payload.amount,
            "interval": payload.interval,
            "per_seat_amount": payload.per_seat_amount,
            "usage_meter_id": payload.usage_meter_id,
            "usage_tiers": dump_tier_table(payload.usage_tiers) if payload.usage_tiers is not None else None,
        }

    @staticmethod
    def _plan_load_options() -> tuple[Any, ...]:
        return (
            selectinload(ProductPlan.pricing).selectinload(ProductPricing.usage_meter),
            selectinload(ProductPlan.features),
            selectinload(ProductPlan.add_on_links)
            .selectinload(ProductPlanAddOn.add_on)
            .selectinload(ProductAddOn.pricing)
            .selectinload(ProductAddOnPricing.usage_meter),
        )

    def _get_add_on(self, session: Session, ctx: AuthContext, add_on_id: uuid.UUID) -> ProductAddOn:
        add_on = self.add_on_repository.get_scoped(
            session,
            ctx,
            add_on_id,
            options=(selectinload(ProductAddOn.pricing).selectinload(ProductAddOnPricing.usage_meter),),
        )
        if add_on is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="add-on not found")
        return add_on

    def _get_meter(self, session: Session, ctx: AuthContext, meter_id: uuid.UUID) -> UsageMeter:
        meter = self.usage_meter_repository.get_scoped(session, ctx, meter_id)
        if meter is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="usage meter not found")
        return meter

    @staticmethod
    def _require_organization(ctx: AuthContext) -> None:
        if ctx.organization_id is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="organization context required")

    def _to_pricing_read(self, row: ProductPricing | ProductAddOnPricing, *, owner_id: uuid.UUID) -> PricingRead:
        tiers = self._stored_tiers(row.usage_tiers, owner_id=owner_id)
        return PricingRead(
            id=row.id,
            pricing_type=row.pricing_type,
            region=getattr(row, "region", None),
            currency=row.currency,
            amount=row.amount,
            interval=row.interval,
            per_seat_amount=row.per_seat_amount,
            usage_meter_id=row.usage_meter_id,
            usage_tiers=list(tiers) if row.usage_tiers is not None else None,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_plan_add_on_read(link: ProductPlanAddOn) -> PlanAddOnRead:
        return PlanAddOnRead(
            id=link.id,
            plan_id=link.plan_id,
            add_on_id=link.add_on_id,
            add_on_name=link.add_on.name,
            billing_type=link.billing_type,
            display_order=link.display_order,
            created_at=link.created_at,
        )

    def _to_add_on_read(self, add_on: ProductAddOn) -> AddOnRead:
        return AddOnRead(
            id=add_on.id,
            organization_id=add_on.organization_id,
            name=add_on.name,
            description=add_on.description,
            pricing_model=add_on.pricing_model,
            status=add_on.status,
            created_at=add_on.created_at,
            pricing=[self._to_pricing_read(row, owner_id=add_on.id) for row in add_on.pricing],
        )

    def _to_plan_read(self, plan: ProductPlan) -> PlanRead:
        return PlanRead(
            id=plan.id,
            organization_id=plan.organization_id,
            name=plan.name,
            code=plan.code,
            description=plan.description,
            status=plan.status,
            pricing_model=plan.pricing_model,
            trial_days=plan.trial_days,
            created_at=plan.created_at,
            updated_at=plan.updated_at,
            pricing=[self._to_pricing_read(row, owner_id=plan.id) for row in plan.pricing],
            features=[FeatureRead.model_validate(item) for item in plan.features],
            add_ons=[self._to_plan_add_on_read(link) for link in plan.add_on_links],
        )


catalog_service = CatalogService()
