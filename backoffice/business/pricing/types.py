from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


PricingModel = Literal["flat", "seat", "usage", "hybrid"]
BillingCycle = Literal["monthly", "yearly"]
PricingType = Literal["base", "regional", "seat", "usage"]
AddOnBillingType = Literal["billed_with_main", "consumable"]
DiscountType = Literal["percentage", "fixed_amount", "free_months", "trial_extension"]
CustomerDiscountType = Literal["percentage", "fixed_amount"]
CouponStatus = Literal["active", "expired", "disabled"]


class UsageTier(BaseModel):
    """One row of a tier table; ``up_to`` is None for the unbounded top tier."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    up_to: int | None = Field(default=None, alias="upTo", ge=1)
    unit_price: int = Field(alias="unitPrice", ge=0)


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: str
    quantity: int
    unit_price: int = Field(alias="unitPrice")
    total: int


@dataclass(slots=True, frozen=True)
class PricingRow:
    pricing_type: PricingType
    amount: int
    currency: str = "USD"
    interval: BillingCycle | None = None
    region: str | None = None
    per_seat_amount: int | None = None
    usage_meter_id: str | None = None
    usage_meter_name: str | None = None
    usage_unit: str | None = None
    usage_tiers: tuple[UsageTier, ...] = ()


@dataclass(slots=True, frozen=True)
class CouponTerms:
    code: str
    discount_type: DiscountType
    discount_value: int
    status: CouponStatus = "active"
    applicable_plan_ids: tuple[str, ...] | None = None
    max_redemptions: int | None = None
    redemption_count: int = 0
    expires_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class CustomerDiscount:
    """Negotiated discount on a customer's recurring charge, applied ahead of any coupon.

    A non-recurring discount reduces the first invoice only and stays out of MRR.
    """

    discount_type: CustomerDiscountType
    value: int
    is_recurring: bool = False


@dataclass(slots=True, frozen=True)
class AddOnSelection:
    attachment_id: str
    add_on_id: str
    name: str
    pricing_model: Literal["flat", "seat", "usage"]
    billing_type: AddOnBillingType
    pricing: tuple[PricingRow, ...]
    quantity: int = 1
    display_order: int = 0


@dataclass(slots=True, frozen=True)
class AddOnCharge:
    attachment_id: str
    add_on_id: str
    name: str
    billing_type: AddOnBillingType
    quantity: int
    unit_price: int
    amount: int
    usage_meter_id: str | None = None

    @property
    def included_in_mrr(self) -> bool:
        return self.billing_type == "billed_with_main"


@dataclass(slots=True, frozen=True)
class UsageComponent:
    name: str
    usage_meter_id: str | None
    unit: str | None
    tiers: tuple[UsageTier, ...]
    flat_unit_price: int | None = None
    source: Literal["plan", "add_on"] = "plan"
    units: int | None = None
    charge: int | None = None


@dataclass(slots=True, frozen=True)
class PricingInput:
    plan_id: str
    plan_name: str
    pricing_model: PricingModel
    pricing: tuple[PricingRow, ...]
    cycle: BillingCycle
    seats: int = 1
    region: str | None = None
    add_ons: tuple[AddOnSelection, ...] = ()
    customer_discount: CustomerDiscount | None = None
    coupon: CouponTerms | None = None
    now: datetime | None = None
    included_seats: int = 0
    free_cycle: bool = False
    usage: Mapping[str, int] | None = None
    currency: str | None = None


@dataclass(slots=True)
class PricingResult:
    plan_id: str
    cycle: BillingCycle
    currency: str
    base_amount: int
    per_seat_amount: int
    seat_quantity: int
    seat_amount: int
    add_on_charges: list[AddOnCharge]
    consumables: list[UsageComponent]
    usage_components: list[UsageComponent]
    gross_recurring: int
    customer_discount: int
    coupon_discount: int
    free_cycle_credit: int
    recurring_charge: int
    mrr: int
    line_item_preview: list[LineItem] = field(default_factory=list)

    @property
    def usage_total(self) -> int:
        return sum(item.charge or 0 for item in [*self.usage_components, *self.consumables])

    @property
    def subtotal(self) -> int:
        return sum(item.total for item in self.line_item_preview)
