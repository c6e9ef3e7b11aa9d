from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


InvoiceStatus = Literal["pending", "paid", "refunded", "failed"]
RefundRequestStatus = Literal["pending", "approved", "rejected", "processed"]
RefundReason = Literal["duplicate", "not_satisfied", "billing_error", "cancelled_service", "other"]


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    invoice_number: str
    amount: Decimal
    currency: str
    status: InvoiceStatus | str
    tier: str | None
    billing_period: str | None
    issued_date: datetime
    paid_date: datetime | None
    refund_of_invoice_id: UUID | None
    notes: str | None


class RefundRequestCreate(BaseModel):
    invoice_id: UUID | None = None
    amount: Decimal = Field(gt=Decimal("0"), max_digits=18, decimal_places=2)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    reason: RefundReason
    description: str | None = Field(default=None, max_length=2000)


class RefundRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    invoice_id: UUID | None
    amount: Decimal
    currency: str
    reason: str
    description: str | None
    status: RefundRequestStatus | str
    admin_id: str | None
    admin_notes: str | None
    external_refund_id: str | None
    processed_at: datetime | None
    created_at: datetime
