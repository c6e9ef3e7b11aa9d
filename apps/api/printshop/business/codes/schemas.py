from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


CodeType = Literal["promo", "creator"]
GrantedTier = Literal["tier_1", "tier_2"]


class RedeemRequest(BaseModel):
    code: str = Field(max_length=64)


class RedeemResponse(BaseModel):
    success: bool
    message: str
    error: str | None = None
    code_type: CodeType | None = None
    tier: str | None = None
    trial_days: int | None = None
    discount_percentage: int | None = None


class PromoCodeCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    tier_granted: GrantedTier
    max_uses: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None
    description: str | None = Field(default=None, max_length=1000)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        normalized = value.strip().upper()
        if not normalized:
            raise ValueError("code must not be blank")
        return normalized


class CreatorCodeCreate(PromoCodeCreate):
    creator_name: str = Field(min_length=1, max_length=255)
    trial_days: int = Field(default=0, ge=0, le=365)
    discount_percentage: int = Field(default=0, ge=0, le=100)


class CodeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code_type: CodeType
    code: str
    tier_granted: str
    max_uses: int | None
    current_uses: int
    is_active: bool
    expires_at: datetime | None
    description: str | None
    creator_name: str | None = None
    trial_days: int | None = None
    discount_percentage: int | None = None
    created_at: datetime
