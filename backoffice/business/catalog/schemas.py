from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from backoffice.business.pricing.coupons import normalize_code
from backoffice.business.pricing.tiers import validate_tier_table
from backoffice.business.pricing.types import UsageTier
from backoffice.core.config import get_settings


PlanStatus = Literal["draft", "active", "archived"]
PricingModel = Literal["flat", "seat", "usage", "hybrid"]
AddOnPricingModel = Literal["flat", "seat", "usage"]
AddOnStatus = Literal["draft", "active", "archived"]
PricingType = Literal["base", "regional", "seat", "usage"]
AddOnPricingType = Literal["base", "seat", "usage"]
BillingInterval = Literal["monthly", "yearly"]
AddOnBillingType = Literal["billed_with_main", "consumable"]
DiscountType = Literal["percentage", "fixed_amount", "free_months", "trial_extension"]
CouponStatus = Literal["active", "expired", "disabled"]
MeterStatus = Literal["active", "archived"]


class _PricingFields(BaseModel):
    currency: str = Field(default_factory=lambda: get_settings().default_currency, min_length=3, max_length=16)
    amount: int = Field(default=0, ge=0)
    interval: BillingInterval | None = None
    per_seat_amount: int | None = Field(default=None, ge=0)
    usage_meter_id: UUID | None = None
    usage_tiers: list[UsageTier] | None = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("usage_tiers")
    @classmethod
    def _valid_tiers(cls, value: list[UsageTier] | None) -> list[UsageTier] | None:
        if value is None:
            return None
        return list(validate_tier_table(value))

    def _check_shape(self, pricing_type: str) -> None:
        if pricing_type == "usage":
            if self.usage_meter_id is None:
                raise ValueError("usage pricing requires usage_meter_id")
            if self.interval is not None:
                raise ValueError("usage pricing has no interval")
        elif self.interval is None:
            raise ValueError(f"{pricing_type} pricing requires an interval")
        if pricing_type == "seat" and self.per_seat_amount is None and self.amount == 0:
            raise ValueError("seat pricing requires per_seat_amount or amount")


class PricingCreate(_PricingFields):
    pricing_type: PricingType
    region: str | None = None

    @model_validator(mode="after")
    def _shape(self) -> PricingCreate:
        if self.pricing_type == "regional" and not self.region:
            raise ValueError("regional pricing requires region")
        if self.pricing_type != "regional" and self.region is not None:
            raise ValueError("region is only allowed on regional pricing")
        self._check_shape(self.pricing_type)
        return self


class AddOnPricingCreate(_PricingFields):
    pricing_type: AddOnPricingType

    @model_validator(mode="after")
    def _shape(self) -> AddOnPricingCreate:
        self._check_shape(self.pricing_type)
        return self


class PricingRead(BaseModel):
    id: UUID
    pricing_type: str
    region: str | None = None
    currency: str
    amount: int
    interval: str | None
    per_seat_amount: int | None
    usage_meter_id: UUID | None
    usage_tiers: list[UsageTier] | None
    created_at: datetime


class FeatureCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    display_order: int = Field(default=0, ge=0)


class FeatureRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_id: UUID
    name: str
    description: str | None
    display_order: int


class PlanCreate(BaseModel):
    name: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=128)
    description: str | None = None
    status: Literal["draft", "active"] = "draft"
    pricing_model: PricingModel
    trial_days: int = Field(default=0, ge=0, le=365)


class PlanStatusUpdate(BaseModel):
    status: PlanStatus


class PlanAddOnCreate(BaseModel):
    add_on_id: UUID
    billing_type: AddOnBillingType = "billed_with_main"
    display_order: int = Field(default=0, ge=0)


class PlanAddOnRead(BaseModel):
    id: UUID
    plan_id: UUID
    add_on_id: UUID
    add_on_name: str
    billing_type: AddOnBillingType | str
    display_order: int
    created_at: datetime


class PlanRead(BaseModel):
    id: UUID
    organization_id: str
    name: str
    code: str
    description: str | None
    status: PlanStatus | str
    pricing_model: PricingModel | str
    trial_days: int
    created_at: datetime
    updated_at: datetime
    pricing: list[PricingRead] = Field(default_factory=list)
    features: list[FeatureRead] = Field(default_factory=list)
    add_ons: list[PlanAddOnRead] = Field(default_factory=list)


class UsageMeterCreate(BaseModel):
    name: str = Field(min_length=1)
    unit: str = Field(min_length=1, max_length=64)


class UsageMeterRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    name: str
    unit: str
    status: MeterStatus | str
    created_at: datetime


class AddOnCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    pricing_model: AddOnPricingModel = "flat"
    status: AddOnStatus = "active"


class AddOnRead(BaseModel):
    id: UUID
    organization_id: str
    name: str
    description: str | None
    pricing_model: AddOnPricingModel | str
    status: AddOnStatus | str
    created_at: datetime
    pricing: list[PricingRead] = Field(default_factory=list)


class CouponCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    description: str | None = None
    discount_type: DiscountType
    discount_value: int = Field(gt=0)
    applicable_plan_ids: list[UUID] | None = None
    max_redemptions: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None
    status: CouponStatus = "active"

    @field_validator("code")
    @classmethod
    def _normalize(cls, value: str) -> str:
        normalized = normalize_code(value)
        if not normalized:
            raise ValueError("coupon code must not be blank")
        return normalized

    @model_validator(mode="after")
    def _percentage_bound(self) -> CouponCreate:
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class CouponRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: str
    code: str
    description: str | None
    discount_type: DiscountType | str
    discount_value: int
    applicable_plan_ids: list[str] | None
    max_redemptions: int | None
    redemption_count: int
    status: CouponStatus | str
    expires_at: datetime | None
    created_at: datetime


class CouponValidateRequest(BaseModel):
    code: str = Field(min_length=1)
    plan_id: UUID


class CouponValidateResponse(BaseModel):
    code: str
    valid: bool
    reason: str | None = None
    discount_type: DiscountType | str | None = None
    discount_value: int | None = None
