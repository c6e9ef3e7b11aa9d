from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printshop.business.entitlements.changelog import record_change
from printshop.business.entitlements.models import SubscriptionChangeLog, UserSubscription
from printshop.business.entitlements.repository import SubscriptionChangeLogRepository, SubscriptionRepository
from printshop.business.entitlements.schemas import SubscriptionChangeRead, SubscriptionRead
from printshop.business.entitlements.tiers import (
    FREE_TIER,
    TIER_ORDER,
    billing_period_length,
    clear_billing,
    is_downgrade,
    is_paid_tier,
    tier_rank,
)
from printshop.business.grace.service import GracePeriodManager, days_remaining, grace_period_manager
from printshop.business.payments.reconciliation import commit_after_processor
from printshop.core.database import commit_or_raise, utcnow
from printshop.core.errors import BusinessRuleError, ValidationError
from printshop.events import publish_on_commit
from printshop.integrations.processor import PaymentProcessor
from printshop.platform.security.context import AuthContext


logger = logging.getLogger("printshop.entitlements")


def to_subscription_read(subscription: UserSubscription) -> SubscriptionRead:
    payload = SubscriptionRead.model_validate(subscription)
    payload.grace_days_remaining = days_remaining(subscription.grace_period_end)
    return payload


@dataclass(slots=True)
class EntitlementStore:
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    change_log_repository: SubscriptionChangeLogRepository = SubscriptionChangeLogRepository()
    grace_manager: GracePeriodManager = field(default_factory=lambda: grace_period_manager)

    def get_subscription(self, session: Session, ctx: AuthContext, user_id: str) -> UserSubscription:
        return self.subscription_repository.get_for_user(session, ctx, user_id)

    def load_for_update(self, session: Session, ctx: AuthContext, user_id: str) -> UserSubscription:
        """Load a row about to be mutated, closing an overdue grace window first."""

        subscription = self.subscription_repository.get_for_user(session, ctx, user_id)
        self.grace_manager.expire_if_due(session, ctx, subscription)
        return subscription

    def provision_subscription(self, session: Session, ctx: AuthContext, user_id: str) -> UserSubscription:
        existing = session.scalar(select(UserSubscription).where(UserSubscription.user_id == user_id))
        if existing is not None:
            return existing

        subscription = UserSubscription(user_id=user_id, tier=FREE_TIER, status="active", starts_at=utcnow())
        session.add(subscription)
        record_change(session, ctx, user_id, "provisioned", previous_tier=None, new_tier=FREE_TIER)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent signup hook created the row first.
            session.rollback()
            return self.subscription_repository.get_for_user(session, ctx, user_id)
        session.refresh(subscription)
        logger.info("subscription.provisioned", extra={"user_id": user_id})
        return subscription

    def apply_tier_change(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        new_tier: str,
        *,
        reset_billing: bool = False,
        reason: str | None = None,
        notes: dict[str, Any] | None = None,
        change_type: str | None = None,
        commit: bool = True,
    ) -> UserSubscription:
        if new_tier not in TIER_ORDER:
            raise ValidationError(f"unknown tier '{new_tier}'", code="invalid_tier")

        subscription = self.load_for_update(session, ctx, user_id)
        previous_tier = subscription.tier
        downgrade = is_paid_tier(previous_tier) and is_downgrade(previous_tier, new_tier)

        if reset_billing or new_tier == FREE_TIER:
            clear_billing(subscription)
        subscription.tier = new_tier
        if new_tier == FREE_TIER:
            subscription.status = "cancelled" if is_paid_tier(previous_tier) else "active"
            subscription.expires_at = None
        else:
            subscription.status = "active"

        if change_type is None:
            if tier_rank(new_tier) > tier_rank(previous_tier):
                change_type = "upgrade"
            elif tier_rank(new_tier) < tier_rank(previous_tier):
                change_type = "downgrade"
            else:
                change_type = "same"
        record_change(
            session,
            ctx,
            user_id,
            change_type,
            previous_tier=previous_tier,
            new_tier=new_tier,
            reason=reason,
            notes={**(notes or {}), "reset_billing": reset_billing},
        )

        if downgrade:
            self.grace_manager.start_grace_period(session, ctx, user_id, previous_tier, reason=reason, commit=False)
        elif new_tier != FREE_TIER and subscription.grace_period_end is not None:
            self.grace_manager.cancel_grace_period(session, ctx, user_id, reason="tier restored", commit=False)

        publish_on_commit(
            session,
            {
                "event_type": "subscription.tier_changed",
                "user_id": user_id,
                "previous_tier": previous_tier,
                "tier": new_tier,
                "change_type": change_type,
            },
        )
        if commit:
            commit_or_raise(session)
            session.refresh(subscription)
        logger.info(
            "subscription.tier_changed",
            extra={"user_id": user_id, "actor_id": ctx.actor_id, "previous_tier": previous_tier, "tier": new_tier},
        )
        return subscription

    def link_external_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        external_subscription_id: str,
        external_customer_id: str | None,
        *,
        reason: str | None = None,
        commit: bool = True,
    ) -> UserSubscription:
        subscription = self.load_for_update(session, ctx, user_id)
        if (
            subscription.is_paid_subscription
            and subscription.external_subscription_id == external_subscription_id
            and (external_customer_id is None or subscription.external_customer_id == external_customer_id)
        ):
            return subscription
        if not is_paid_tier(subscription.tier):
            raise BusinessRuleError("a free subscription cannot be linked to paid billing", code="free_tier_link")

        previous_external_id = subscription.external_subscription_id
        subscription.external_subscription_id = external_subscription_id
        if external_customer_id is not None:
            subscription.external_customer_id = external_customer_id
        subscription.is_paid_subscription = True

        record_change(
            session,
            ctx,
            user_id,
            "external_subscription_linked",
            previous_tier=subscription.tier,
            new_tier=subscription.tier,
            reason=reason,
            notes={
                "external_subscription_id": external_subscription_id,
                "previous_external_subscription_id": previous_external_id,
            },
        )
        if commit:
            commit_or_raise(session)
            session.refresh(subscription)
        return subscription

    def unlink_external_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        *,
        reason: str | None = None,
        commit: bool = True,
    ) -> UserSubscription:
        subscription = self.load_for_update(session, ctx, user_id)
        if (
            not subscription.is_paid_subscription
            and subscription.external_subscription_id is None
            and subscription.billing_period is None
            and subscription.next_billing_date is None
            and subscription.last_payment_date is None
        ):
            return subscription

        previous_external_id = subscription.external_subscription_id
        clear_billing(subscription)
        record_change(
            session,
            ctx,
            user_id,
            "external_subscription_unlinked",
            previous_tier=subscription.tier,
            new_tier=subscription.tier,
            reason=reason,
            notes={"previous_external_subscription_id": previous_external_id},
        )
        if commit:
            commit_or_raise(session)
            session.refresh(subscription)
        return subscription

    def cancel_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        processor: PaymentProcessor,
        *,
        immediate: bool,
        reason: str | None = None,
    ) -> UserSubscription:
        subscription = self.load_for_update(session, ctx, user_id)
        if subscription.status == "cancelled":
            raise BusinessRuleError("subscription is already cancelled", code="already_cancelled")
        if not is_paid_tier(subscription.tier):
            raise BusinessRuleError("free subscriptions cannot be cancelled", code="nothing_to_cancel")

        now = utcnow()
        period_end = None
        processor_cancelled = False
        external_id = subscription.external_subscription_id
        if subscription.is_paid_subscription and external_id:
            # Raises before any local change when the processor refuses.
            remote = processor.cancel_subscription(external_id, at_period_end=not immediate)
            period_end = remote.current_period_end
            processor_cancelled = True

        previous_tier = subscription.tier
        if immediate:
            self.apply_tier_change(
                session,
                ctx,
                user_id,
                FREE_TIER,
                reset_billing=True,
                reason=reason or "cancelled by user",
                change_type="cancellation",
                commit=False,
            )
        else:
            if period_end is None:
                period_end = subscription.next_billing_date
            if period_end is None:
                period_end = now + billing_period_length(subscription.billing_period or "monthly")
            subscription.status = "cancelled"
            subscription.expires_at = period_end
            record_change(
                session,
                ctx,
                user_id,
                "cancellation",
                previous_tier=previous_tier,
                new_tier=previous_tier,
                reason=reason or "cancelled by user",
                notes={"effective_at": period_end.isoformat(), "external_subscription_id": external_id},
            )

        if processor_cancelled:
            commit_after_processor(
                session,
                user_id=user_id,
                operation="user_cancel_subscription",
                external_reference=external_id,
                detail="processor subscription cancelled but the local cancellation was not saved",
            )
        else:
            commit_or_raise(session)
        session.refresh(subscription)
        logger.info(
            "subscription.cancelled",
            extra={"user_id": user_id, "previous_tier": previous_tier, "status": "immediate" if immediate else "period_end"},
        )
        return subscription

    def list_changes(self, session: Session, ctx: AuthContext, user_id: str) -> list[SubscriptionChangeRead]:
        stmt = self.change_log_repository.apply_scope_query(
            select(SubscriptionChangeLog).where(SubscriptionChangeLog.user_id == user_id),
            ctx,
        )
        rows = session.scalars(stmt.order_by(SubscriptionChangeLog.created_at.asc())).all()
        return [SubscriptionChangeRead.model_validate(row) for row in rows]


entitlement_store = EntitlementStore()
