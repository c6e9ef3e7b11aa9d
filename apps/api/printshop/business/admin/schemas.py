from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from printshop.business.entitlements.schemas import BillingPeriod, Tier


class AdminUserRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    notes: str | None = Field(default=None, max_length=2000)


class AdminTierChangeRequest(AdminUserRequest):
    new_tier: Tier


class AdminBillingPeriodChangeRequest(AdminUserRequest):
    new_period: BillingPeriod


class AdminTrialRequest(AdminUserRequest):
    trial_days: int = Field(ge=1, le=365)


class AdminCancelSubscriptionRequest(AdminUserRequest):
    cancel_externally: bool = True
    immediate: bool = True


class AdminGraceExtendRequest(AdminUserRequest):
    additional_days: int = Field(ge=1, le=365)


class AdminRefundDecisionRequest(BaseModel):
    request_id: UUID
    action: Literal["approve", "reject"]
    admin_notes: str | None = Field(default=None, max_length=2000)
    refund_externally: bool = False


class AdminActionResponse(BaseModel):
    success: bool = True
    message: str
    details: dict[str, Any] | None = None


class ReconciliationIssueRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    operation: str
    external_reference: str | None
    detail: str
    resolved: bool
    correlation_id: str | None
    created_at: datetime
