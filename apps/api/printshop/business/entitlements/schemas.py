from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


Tier = Literal["free", "tier_1", "tier_2"]
SubscriptionStatus = Literal["active", "trial", "cancelled", "expired"]
BillingPeriod = Literal["monthly", "annual"]


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    tier: Tier | str
    status: SubscriptionStatus | str
    billing_period: BillingPeriod | None
    is_paid_subscription: bool
    external_subscription_id: str | None
    external_customer_id: str | None
    starts_at: datetime
    expires_at: datetime | None
    next_billing_date: datetime | None
    last_payment_date: datetime | None
    previous_tier: str | None
    downgrade_date: datetime | None
    grace_period_end: datetime | None
    is_read_only: bool
    grace_days_remaining: int = 0
    updated_at: datetime


class SubscriptionChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    actor_id: str | None
    change_type: str
    previous_tier: str | None
    new_tier: str | None
    reason: str | None
    notes: dict[str, Any] | None
    correlation_id: str | None
    created_at: datetime


class CancelSubscriptionRequest(BaseModel):
    immediate: bool = False
    reason: str | None = Field(default=None, max_length=1000)
