from __future__ import annotations

from backoffice.business.catalog.models import Coupon, ProductAddOn, ProductPlan, ProductPricing, UsageMeter
from backoffice.platform.security.repository import BaseRepository


class ProductPlanRepository(BaseRepository[ProductPlan]):
    resource = "catalog.plan"
    model = ProductPlan


class ProductPricingRepository(BaseRepository[ProductPricing]):
    resource = "catalog.pricing"
    model = ProductPricing


class ProductAddOnRepository(BaseRepository[ProductAddOn]):
    resource = "catalog.add_on"
    model = ProductAddOn


class UsageMeterRepository(BaseRepository[UsageMeter]):
    resource = "catalog.usage_meter"
    model = UsageMeter


class CouponRepository(BaseRepository[Coupon]):
    resource = "catalog.coupon"
    model = Coupon
