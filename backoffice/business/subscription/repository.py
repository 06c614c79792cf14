from __future__ import annotations

from backoffice.business.subscription.models import Subscription, SubscriptionActivity, UsageHistory
from backoffice.platform.security.repository import BaseRepository


class SubscriptionRepository(BaseRepository[Subscription]):
    resource = "subscription.subscription"
    model = Subscription


class SubscriptionActivityRepository(BaseRepository[SubscriptionActivity]):
    resource = "subscription.activity"
    model = SubscriptionActivity


class UsageHistoryRepository(BaseRepository[UsageHistory]):
    resource = "subscription.usage"
    model = UsageHistory
