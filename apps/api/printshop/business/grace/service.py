from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from printshop.business.entitlements.changelog import record_change
from printshop.business.entitlements.models import UserSubscription
from printshop.business.entitlements.repository import SubscriptionRepository
from printshop.business.entitlements.tiers import FREE_TIER, clear_billing, is_paid_tier
from printshop.core.config import get_settings
from printshop.core.database import commit_or_raise, utcnow
from printshop.core.errors import BusinessRuleError, ConflictError, ValidationError
from printshop.events import publish_on_commit
from printshop.metrics import observe_sweep
from printshop.platform.security.context import AuthContext, service_context


logger = logging.getLogger("printshop.grace")

REMINDER_MILESTONES = (30, 7, 1)


def days_remaining(grace_period_end: datetime | None, now: datetime | None = None) -> int:
    """Whole days left in a grace window, rounded up and never negative."""

    if grace_period_end is None:
        return 0
    now = now or utcnow()
    seconds = (grace_period_end - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


@dataclass(slots=True)
class GracePeriodManager:
    subscription_repository: SubscriptionRepository = SubscriptionRepository()

    def start_grace_period(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        previous_tier: str,
        days: int | None = None,
        *,
        reason: str | None = None,
        commit: bool = True,
    ) -> UserSubscription:
        days = get_settings().grace_period_days if days is None else days
        if days <= 0:
            raise ValidationError("grace period length must be positive")

        subscription = self.subscription_repository.get_for_user(session, ctx, user_id)
        now = utcnow()
        subscription.previous_tier = previous_tier
        subscription.downgrade_date = now
        subscription.grace_period_end = now + timedelta(days=days)
        subscription.is_read_only = True

        record_change(
            session,
            ctx,
            user_id,
            "grace_period_started",
            previous_tier=previous_tier,
            new_tier=subscription.tier,
            reason=reason,
            notes={"grace_period_end": subscription.grace_period_end.isoformat(), "days": days},
        )
        publish_on_commit(
            session,
            {
                "event_type": "subscription.grace_period_started",
                "user_id": user_id,
                "previous_tier": previous_tier,
                "grace_period_end": subscription.grace_period_end.isoformat(),
            },
        )
        if commit:
            commit_or_raise(session)
            session.refresh(subscription)
        logger.info("grace.started", extra={"user_id": user_id, "previous_tier": previous_tier, "count": days})
        return subscription

    def extend_grace_period(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        additional_days: int,
        *,
        reason: str | None = None,
        commit: bool = True,
    ) -> UserSubscription:
        if additional_days <= 0:
            raise ValidationError("additional_days must be positive")

        subscription = self.subscription_repository.get_for_user(session, ctx, user_id)
        if subscription.grace_period_end is None or subscription.grace_period_end <= utcnow():
            raise BusinessRuleError("user has no active grace period", code="no_active_grace_period")

        previous_end = subscription.grace_period_end
        subscription.grace_period_end = previous_end + timedelta(days=additional_days)
        subscription.is_read_only = True

        record_change(
            session,
            ctx,
            user_id,
            "grace_period_extended",
            previous_tier=subscription.previous_tier,
            new_tier=subscription.tier,
            reason=reason,
            notes={
                "previous_grace_period_end": previous_end.isoformat(),
                "grace_period_end": subscription.grace_period_end.isoformat(),
                "additional_days": additional_days,
            },
        )
        if commit:
            commit_or_raise(session)
            session.refresh(subscription)
        return subscription

    def cancel_grace_period(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        *,
        reason: str | None = None,
        commit: bool = True,
    ) -> UserSubscription:
        subscription = self.subscription_repository.get_for_user(session, ctx, user_id)
        if subscription.grace_period_end is None and not subscription.is_read_only:
            return subscription

        previous_end = subscription.grace_period_end
        self.clear(subscription)
        record_change(
            session,
            ctx,
            user_id,
            "grace_period_cancelled",
            previous_tier=subscription.tier,
            new_tier=subscription.tier,
            reason=reason,
            notes={"previous_grace_period_end": previous_end.isoformat() if previous_end else None},
        )
        if commit:
            commit_or_raise(session)
            session.refresh(subscription)
        return subscription

    @staticmethod
    def clear(subscription: UserSubscription) -> None:
        subscription.grace_period_end = None
        subscription.downgrade_date = None
        subscription.previous_tier = None
        subscription.is_read_only = False

    def expire_if_due(self, session: Session, ctx: AuthContext, subscription: UserSubscription, now: datetime | None = None) -> bool:
        """Close a grace window whose deadline has passed. Does not commit."""

        now = now or utcnow()
        if subscription.grace_period_end is None or subscription.grace_period_end > now:
            return False

        previous_tier = subscription.previous_tier
        grace_end = subscription.grace_period_end
        self.clear(subscription)
        if subscription.tier == FREE_TIER:
            subscription.status = "expired"
            subscription.is_paid_subscription = False

        record_change(
            session,
            ctx,
            subscription.user_id,
            "grace_period_expired",
            previous_tier=previous_tier,
            new_tier=subscription.tier,
            notes={"grace_period_end": grace_end.isoformat()},
        )
        # Asset cleanup for data beyond the current tier's limits is owned by a storage collaborator.
        publish_on_commit(
            session,
            {
                "event_type": "subscription.grace_period_expired",
                "user_id": subscription.user_id,
                "previous_tier": previous_tier,
                "tier": subscription.tier,
            },
        )
        return True

    def sweep_expired_grace_periods(self, session: Session, now: datetime | None = None) -> int:
        now = now or utcnow()
        ctx = service_context()
        rows = session.scalars(
            select(UserSubscription)
            .where(UserSubscription.grace_period_end.is_not(None), UserSubscription.grace_period_end <= now)
            .order_by(UserSubscription.grace_period_end.asc())
        ).all()

        expired = 0
        for row in rows:
            if not self.expire_if_due(session, ctx, row, now):
                continue
            try:
                commit_or_raise(session)
            except ConflictError:
                logger.warning("grace.sweep_conflict", extra={"user_id": row.user_id, "operation": "grace_period_expired"})
                continue
            expired += 1

        observe_sweep("grace_period_expired", expired)
        logger.info("grace.sweep_completed", extra={"operation": "grace_period_expired", "count": expired})
        return expired

    def expire_lapsed_entitlements(self, session: Session, now: datetime | None = None) -> int:
        """Expire finished trials and downgrade cancelled paid rows whose period ended."""

        now = now or utcnow()
        ctx = service_context()
        rows = session.scalars(
            select(UserSubscription).where(
                UserSubscription.expires_at.is_not(None),
                UserSubscription.expires_at <= now,
                UserSubscription.status.in_(["trial", "cancelled"]),
            )
        ).all()

        lapsed = 0
        for row in rows:
            user_id = row.user_id
            previous_tier = row.tier
            if row.status == "trial":
                row.tier = FREE_TIER
                row.status = "expired"
                row.expires_at = None
                clear_billing(row)
                record_change(session, ctx, row.user_id, "trial_expired", previous_tier=previous_tier, new_tier=FREE_TIER)
            elif is_paid_tier(row.tier):
                row.tier = FREE_TIER
                row.expires_at = None
                clear_billing(row)
                record_change(
                    session,
                    ctx,
                    row.user_id,
                    "subscription_lapsed",
                    previous_tier=previous_tier,
                    new_tier=FREE_TIER,
                )
                self.start_grace_period(
                    session,
                    ctx,
                    row.user_id,
                    previous_tier,
                    reason="paid period ended after cancellation",
                    commit=False,
                )
            else:
                continue
            try:
                commit_or_raise(session)
            except ConflictError:
                logger.warning("grace.sweep_conflict", extra={"user_id": user_id, "operation": "entitlement_lapsed"})
                continue
            lapsed += 1

        observe_sweep("entitlement_lapsed", lapsed)
        logger.info("grace.lapse_sweep_completed", extra={"operation": "entitlement_lapsed", "count": lapsed})
        return lapsed

    def send_grace_reminders(self, session: Session, now: datetime | None = None) -> int:
        now = now or utcnow()
        rows = session.scalars(
            select(UserSubscription).where(
                and_(UserSubscription.grace_period_end.is_not(None), UserSubscription.grace_period_end > now)
            )
        ).all()

        sent = 0
        for row in rows:
            remaining = days_remaining(row.grace_period_end, now)
            if remaining not in REMINDER_MILESTONES:
                continue
            publish_on_commit(
                session,
                {
                    "event_type": "subscription.grace_period_reminder",
                    "user_id": row.user_id,
                    "days_remaining": remaining,
                    "grace_period_end": row.grace_period_end.isoformat() if row.grace_period_end else None,
                    "previous_tier": row.previous_tier,
                },
            )
            sent += 1

        # Nothing is written; the commit only releases the queued reminder events.
        session.commit()
        observe_sweep("grace_period_reminder", sent)
        return sent


grace_period_manager = GracePeriodManager()
