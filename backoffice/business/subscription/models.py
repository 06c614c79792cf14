from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.business.catalog.models import Coupon, ProductPlan, ProductPlanAddOn, UsageMeter
from backoffice.core.database import Base


LIVE_STATUSES = ("active", "trial", "past_due")
_LIVE_STATUS_CLAUSE = "status IN ('active', 'trial', 'past_due')"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(Base):
    __tablename__ = "subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    customer_org_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_number: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("product_plan.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    collection_method: Mapped[str] = mapped_column(String(32), nullable=False, default="automatic", server_default="automatic")
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    current_period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    trial_end: Mapped[date | None] = mapped_column(Date(), nullable=True)
    seats: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    mrr: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    coupon_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("coupon.id", ondelete="SET NULL"), nullable=True)
    free_cycles_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    customer_discount_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    customer_discount_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    customer_discount_is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    linked_deal_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    plan: Mapped[ProductPlan] = relationship(ProductPlan)
    coupon: Mapped[Coupon | None] = relationship(Coupon)
    add_ons: Mapped[list[SubscriptionAddOn]] = relationship(
        "backoffice.business.subscription.models.SubscriptionAddOn",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    activities: Mapped[list[SubscriptionActivity]] = relationship(
        "backoffice.business.subscription.models.SubscriptionActivity",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="SubscriptionActivity.created_at",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "subscription_number", name="uq_subscription_number_org"),
        Index(
            "uq_subscription_live_customer",
            "organization_id",
            "customer_org_id",
            unique=True,
            postgresql_where=text(_LIVE_STATUS_CLAUSE),
            sqlite_where=text(_LIVE_STATUS_CLAUSE),
        ),
        Index("ix_subscription_org_status", "organization_id", "status"),
        Index("ix_subscription_period_end", "status", "current_period_end"),
    )


class SubscriptionAddOn(Base):
    __tablename__ = "subscription_add_on"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription.id", ondelete="CASCADE"), nullable=False)
    plan_add_on_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("product_plan_add_on.id", ondelete="RESTRICT"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    subscription: Mapped[Subscription] = relationship(
        "backoffice.business.subscription.models.Subscription",
        back_populates="add_ons",
    )
    plan_add_on: Mapped[ProductPlanAddOn] = relationship(ProductPlanAddOn)

    __table_args__ = (UniqueConstraint("subscription_id", "plan_add_on_id", name="uq_subscription_add_on"),)


class SubscriptionActivity(Base):
    __tablename__ = "subscription_activity"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription.id", ondelete="CASCADE"), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    subscription: Mapped[Subscription] = relationship(
        "backoffice.business.subscription.models.Subscription",
        back_populates="activities",
    )

    __table_args__ = (Index("ix_subscription_activity_subscription", "subscription_id", "created_at"),)


class UsageHistory(Base):
    __tablename__ = "usage_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("subscription.id", ondelete="CASCADE"), nullable=False)
    usage_meter_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("usage_meter.id", ondelete="RESTRICT"), nullable=False)
    period_start: Mapped[date] = mapped_column(Date(), nullable=False)
    period_end: Mapped[date] = mapped_column(Date(), nullable=False)
    quantity: Mapped[int] = mapped_column(BigInteger, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    usage_meter: Mapped[UsageMeter] = relationship(UsageMeter)

    __table_args__ = (Index("ix_usage_history_subscription_period", "subscription_id", "usage_meter_id", "period_start"),)
