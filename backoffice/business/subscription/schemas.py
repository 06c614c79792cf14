from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from backoffice.business.pricing.types import LineItem, UsageTier


BillingCycle = Literal["monthly", "yearly"]
CollectionMethod = Literal["automatic", "send_invoice"]
SubscriptionStatus = Literal["draft", "active", "trial", "past_due", "canceled", "paused"]
ActivityType = Literal[
    "created",
    "coupon_applied",
    "invoice_created",
    "activated",
    "status_changed",
    "period_rolled",
    "usage_recorded",
]


class CustomerDiscountInput(BaseModel):
    discount_type: Literal["percentage", "fixed_amount"]
    value: int = Field(gt=0)
    is_recurring: bool = False

    @model_validator(mode="after")
    def _percentage_bound(self) -> CustomerDiscountInput:
        if self.discount_type == "percentage" and self.value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class PricePreviewRequest(BaseModel):
    plan_id: UUID
    billing_cycle: BillingCycle = "monthly"
    seats: int = Field(default=1, ge=1)
    add_on_ids: list[UUID] = Field(default_factory=list)
    coupon_code: str | None = None
    customer_discount: CustomerDiscountInput | None = None
    region: str | None = None


class AddOnChargeRead(BaseModel):
    add_on_id: str
    name: str
    billing_type: str
    quantity: int
    unit_price: int
    amount: int


class UsageComponentRead(BaseModel):
    name: str
    usage_meter_id: str | None
    unit: str | None
    source: str
    tiers: list[UsageTier] = Field(default_factory=list)
    flat_unit_price: int | None = None


class PricePreviewResponse(BaseModel):
    plan_id: UUID
    billing_cycle: BillingCycle
    currency: str
    base_amount: int
    per_seat_amount: int
    seat_quantity: int
    seat_amount: int
    add_ons: list[AddOnChargeRead] = Field(default_factory=list)
    usage_components: list[UsageComponentRead] = Field(default_factory=list)
    customer_discount: int = 0
    coupon_discount: int
    recurring_charge: int
    mrr: int
    trial_days: int = 0
    line_items: list[LineItem] = Field(default_factory=list)


class SubscriptionCreate(BaseModel):
    customer_org_id: str = Field(min_length=1, max_length=128)
    plan_id: UUID
    billing_cycle: BillingCycle = "monthly"
    seats: int = Field(default=1, ge=1)
    add_on_ids: list[UUID] = Field(default_factory=list)
    coupon_code: str | None = None
    customer_discount: CustomerDiscountInput | None = None
    collection_method: CollectionMethod = "automatic"
    region: str | None = None
    linked_deal_id: str | None = None
    notes: str | None = None


class StatusChangeRequest(BaseModel):
    reason: str | None = None


class UsageRecordCreate(BaseModel):
    usage_meter_id: UUID
    period_start: date
    period_end: date | None = None
    quantity: int = Field(ge=0)


class UsageRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    usage_meter_id: UUID
    period_start: date
    period_end: date
    quantity: int
    recorded_at: datetime


class SubscriptionAddOnRead(BaseModel):
    id: UUID
    plan_add_on_id: UUID
    add_on_id: UUID
    name: str
    billing_type: str
    quantity: int


class SubscriptionRead(BaseModel):
    id: UUID
    organization_id: str
    customer_org_id: str
    subscription_number: str
    plan_id: UUID
    status: SubscriptionStatus | str
    collection_method: CollectionMethod | str
    billing_cycle: BillingCycle | str
    region: str | None
    currency: str
    current_period_start: date
    current_period_end: date
    trial_end: date | None
    seats: int
    mrr: int
    coupon_id: UUID | None
    free_cycles_remaining: int
    customer_discount: CustomerDiscountInput | None = None
    linked_deal_id: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    add_ons: list[SubscriptionAddOnRead] = Field(default_factory=list)


class SubscriptionActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    activity_type: ActivityType | str
    description: str
    old_status: str | None
    new_status: str | None
    user_id: str | None
    metadata_json: dict[str, Any] | None
    created_at: datetime
