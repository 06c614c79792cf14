from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from backoffice.business.pricing.money import format_cents
from backoffice.business.pricing.types import CouponTerms, DiscountType


CouponRejectionReason = Literal["disabled", "expired", "redemptions_exhausted", "not_applicable_to_plan"]

AMOUNT_DISCOUNTS: frozenset[str] = frozenset({"percentage", "fixed_amount"})


@dataclass(slots=True, frozen=True)
class CouponValidation:
    ok: bool
    reason: CouponRejectionReason | None = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def validate(coupon: CouponTerms, plan_id: str, now: datetime) -> CouponValidation:
    """Check a coupon against a plan at ``now``; never touches redemption counts."""

    if coupon.status == "disabled":
        return CouponValidation(ok=False, reason="disabled")
    if coupon.status == "expired":
        return CouponValidation(ok=False, reason="expired")
    if coupon.status != "active":
        return CouponValidation(ok=False, reason="disabled")
    if coupon.expires_at is not None and _aware(now) > _aware(coupon.expires_at):
        return CouponValidation(ok=False, reason="expired")
    if coupon.max_redemptions is not None and coupon.redemption_count >= coupon.max_redemptions:
        return CouponValidation(ok=False, reason="redemptions_exhausted")
    if coupon.applicable_plan_ids is not None and plan_id not in coupon.applicable_plan_ids:
        return CouponValidation(ok=False, reason="not_applicable_to_plan")
    return CouponValidation(ok=True)


def apply(discount_type: DiscountType, value: int, amount: int) -> int:
    if discount_type == "percentage":
        return max(0, amount * (100 - value) // 100)
    if discount_type == "fixed_amount":
        return max(0, amount - value)
    # free_months and trial_extension act on billing cycles and trial dates
    return amount


def discount_amount(discount_type: DiscountType, value: int, amount: int) -> int:
    return amount - apply(discount_type, value, amount)


def describe(coupon: CouponTerms, currency: str = "USD") -> str:
    if coupon.discount_type == "percentage":
        return f"{coupon.discount_value}%"
    if coupon.discount_type == "fixed_amount":
        return format_cents(coupon.discount_value, currency)
    if coupon.discount_type == "free_months":
        return f"{coupon.discount_value} free cycle(s)"
    return f"{coupon.discount_value} extra trial day(s)"
