from backoffice.business.subscription.api import router
from backoffice.business.subscription.models import Subscription, SubscriptionActivity, SubscriptionAddOn, UsageHistory
from backoffice.business.subscription.schemas import (
    PricePreviewRequest,
    PricePreviewResponse,
    SubscriptionCreate,
    SubscriptionRead,
    UsageRecordCreate,
    UsageRecordRead,
)
from backoffice.business.subscription.service import SubscriptionService, subscription_service

__all__ = [
    "router",
    "Subscription",
    "SubscriptionActivity",
    "SubscriptionAddOn",
    "UsageHistory",
    "PricePreviewRequest",
    "PricePreviewResponse",
    "SubscriptionCreate",
    "SubscriptionRead",
    "UsageRecordCreate",
    "UsageRecordRead",
    "SubscriptionService",
    "subscription_service",
]
