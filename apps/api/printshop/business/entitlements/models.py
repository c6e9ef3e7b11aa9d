from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from printshop.core.database import Base, UTCDateTime, utcnow


class UserSubscription(Base):
    __tablename__ = "user_subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free", server_default="free")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    billing_period: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_paid_subscription: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    external_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    previous_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    downgrade_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    is_read_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    processor_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_user_subscription_external_subscription", "external_subscription_id"),
        Index("ix_user_subscription_external_customer", "external_customer_id"),
        Index("ix_user_subscription_grace_period_end", "grace_period_end"),
    )


class SubscriptionChangeLog(Base):
    __tablename__ = "subscription_change_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    change_type: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_subscription_change_log_user", "user_id", "created_at"),
    )
