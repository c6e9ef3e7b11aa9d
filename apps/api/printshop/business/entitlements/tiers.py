from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from printshop.business.entitlements.models import UserSubscription


Tier = Literal["free", "tier_1", "tier_2"]
SubscriptionStatus = Literal["active", "trial", "cancelled", "expired"]
BillingPeriod = Literal["monthly", "annual"]

FREE_TIER = "free"
TIER_ORDER: dict[str, int] = {"free": 0, "tier_1": 1, "tier_2": 2}
PAID_TIERS = frozenset({"tier_1", "tier_2"})

BILLING_PERIOD_DAYS: dict[str, int] = {"monthly": 30, "annual": 365}

# Catalogue prices in minor units (EUR cents).
PLAN_PRICE_CENTS: dict[str, dict[str, int]] = {
    "tier_1": {"monthly": 999, "annual": 9990},
    "tier_2": {"monthly": 1999, "annual": 19990},
}

PLAN_NAMES: dict[str, str] = {"tier_1": "Pro", "tier_2": "Business"}


def tier_rank(tier: str) -> int:
    return TIER_ORDER.get(tier, 0)


def is_paid_tier(tier: str | None) -> bool:
    return tier in PAID_TIERS


def is_downgrade(previous_tier: str, new_tier: str) -> bool:
    return tier_rank(new_tier) < tier_rank(previous_tier)


def billing_period_length(billing_period: str) -> timedelta:
    return timedelta(days=BILLING_PERIOD_DAYS[billing_period])


def plan_price(tier: str, billing_period: str) -> Decimal:
    return (Decimal(PLAN_PRICE_CENTS[tier][billing_period]) / Decimal(100)).quantize(Decimal("0.01"))


def clear_billing(subscription: UserSubscription) -> None:
    """Drop every trace of processor billing; the customer id is kept for later checkouts."""

    subscription.is_paid_subscription = False
    subscription.external_subscription_id = None
    subscription.billing_period = None
    subscription.next_billing_date = None
    subscription.last_payment_date = None
