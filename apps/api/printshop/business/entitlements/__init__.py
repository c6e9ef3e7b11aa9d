from printshop.business.entitlements.models import SubscriptionChangeLog, UserSubscription
from printshop.business.entitlements.schemas import CancelSubscriptionRequest, SubscriptionChangeRead, SubscriptionRead

__all__ = [
    "UserSubscription",
    "SubscriptionChangeLog",
    "SubscriptionRead",
    "SubscriptionChangeRead",
    "CancelSubscriptionRequest",
]
