from backoffice.business.pricing import bolt_ons, coupons, money, tiers
from backoffice.business.pricing.errors import (
    CouponNotApplicable,
    CouponRejected,
    InvalidTierTable,
    InvalidUsageQuantity,
    PricingError,
    PricingNotFoundForCycle,
)
from backoffice.business.pricing.resolver import resolve
from backoffice.business.pricing.types import (
    AddOnCharge,
    AddOnSelection,
    CouponTerms,
    CustomerDiscount,
    LineItem,
    PricingInput,
    PricingResult,
    PricingRow,
    UsageComponent,
    UsageTier,
)

__all__ = [
    "bolt_ons",
    "coupons",
    "money",
    "tiers",
    "resolve",
    "PricingError",
    "InvalidTierTable",
    "InvalidUsageQuantity",
    "PricingNotFoundForCycle",
    "CouponRejected",
    "CouponNotApplicable",
    "AddOnCharge",
    "AddOnSelection",
    "CouponTerms",
    "CustomerDiscount",
    "LineItem",
    "PricingInput",
    "PricingResult",
    "PricingRow",
    "UsageComponent",
    "UsageTier",
]
