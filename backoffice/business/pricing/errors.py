from __future__ import annotations


class PricingError(Exception):
    """Base class for pricing engine failures."""


class InvalidTierTable(PricingError, ValueError):
    """A usage tier table breaks the ordering rules; treated as catalog corruption."""


class InvalidUsageQuantity(PricingError, ValueError):
    pass


class PricingNotFoundForCycle(PricingError):
    def __init__(self, plan_id: str, cycle: str, region: str | None = None, component: str = "base") -> None:
        self.plan_id = plan_id
        self.cycle = cycle
        self.region = region
        self.component = component
        super().__init__(f"no {component} pricing for plan {plan_id} on {cycle} cycle")


class CouponRejected(PricingError):
    def __init__(self, code: str, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"coupon {code} rejected: {reason}")


class CouponNotApplicable(CouponRejected):
    """Raised by the resolver when a supplied coupon fails validation."""
