from backoffice.business.catalog.api import router
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
from backoffice.business.catalog.service import CatalogService, catalog_service

__all__ = [
    "router",
    "Coupon",
    "ProductAddOn",
    "ProductAddOnPricing",
    "ProductFeature",
    "ProductPlan",
    "ProductPlanAddOn",
    "ProductPricing",
    "UsageMeter",
    "CatalogService",
    "catalog_service",
]
