from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductPlan(Base):
    __tablename__ = "product_plan"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    pricing_model: Mapped[str] = mapped_column(String(32), nullable=False)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    pricing: Mapped[list[ProductPricing]] = relationship(
        "ProductPricing",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProductPricing.created_at",
    )
    features: Mapped[list[ProductFeature]] = relationship(
        "ProductFeature",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProductFeature.display_order",
    )
    add_on_links: Mapped[list[ProductPlanAddOn]] = relationship(
        "ProductPlanAddOn",
        back_populates="plan",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProductPlanAddOn.display_order",
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_product_plan_code_org"),
        Index("ix_product_plan_org_status", "organization_id", "status"),
    )


class ProductPricing(Base):
    __tablename__ = "product_pricing"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("product_plan.id", ondelete="CASCADE"), nullable=False)
    pricing_type: Mapped[str] = mapped_column(String(32), nullable=False)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    interval: Mapped[str | None] = mapped_column(String(16), nullable=True)
    per_seat_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    usage_meter_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("usage_meter.id", ondelete="SET NULL"),
        nullable=True,
    )
    usage_tiers: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    plan: Mapped[ProductPlan] = relationship("ProductPlan", back_populates="pricing")
    usage_meter: Mapped[UsageMeter | None] = relationship("UsageMeter")

    __table_args__ = (Index("ix_product_pricing_plan", "plan_id", "pricing_type"),)


class ProductFeature(Base):
    __tablename__ = "product_feature"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("product_plan.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    plan: Mapped[ProductPlan] = relationship("ProductPlan", back_populates="features")


class UsageMeter(Base):
    __tablename__ = "usage_meter"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    unit: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("organization_id", "name", name="uq_usage_meter_name_org"),)


class ProductAddOn(Base):
    __tablename__ = "product_add_on"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    pricing_model: Mapped[str] = mapped_column(String(32), nullable=False, default="flat", server_default="flat")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    pricing: Mapped[list[ProductAddOnPricing]] = relationship(
        "ProductAddOnPricing",
        back_populates="add_on",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ProductAddOnPricing.created_at",
    )

    __table_args__ = (Index("ix_product_add_on_org_status", "organization_id", "status"),)


class ProductAddOnPricing(Base):
    __tablename__ = "product_add_on_pricing"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    add_on_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("product_add_on.id", ondelete="CASCADE"),
        nullable=False,
    )
    pricing_type: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    interval: Mapped[str | None] = mapped_column(String(16), nullable=True)
    per_seat_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    usage_meter_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("usage_meter.id", ondelete="SET NULL"),
        nullable=True,
    )
    usage_tiers: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    add_on: Mapped[ProductAddOn] = relationship("ProductAddOn", back_populates="pricing")
    usage_meter: Mapped[UsageMeter | None] = relationship("UsageMeter")


class ProductPlanAddOn(Base):
    __tablename__ = "product_plan_add_on"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("product_plan.id", ondelete="CASCADE"), nullable=False)
    add_on_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("product_add_on.id", ondelete="CASCADE"),
        nullable=False,
    )
    billing_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="billed_with_main",
        server_default="billed_with_main",
    )
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    plan: Mapped[ProductPlan] = relationship("ProductPlan", back_populates="add_on_links")
    add_on: Mapped[ProductAddOn] = relationship("ProductAddOn")

    __table_args__ = (UniqueConstraint("plan_id", "add_on_id", name="uq_product_plan_add_on"),)


class Coupon(Base):
    __tablename__ = "coupon"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[str] = mapped_column(String(128), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_type: Mapped[str] = mapped_column(String(32), nullable=False)
    discount_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    applicable_plan_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    max_redemptions: Mapped[int | None] = mapped_column(Integer, nullable=True)
    redemption_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_coupon_code_org"),
        Index("ix_coupon_org_status", "organization_id", "status"),
    )
