from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from printshop.business.entitlements.models import UserSubscription
from printshop.core.errors import NotFoundError
from printshop.platform.security.context import AuthContext
from printshop.platform.security.repository import BaseRepository


class SubscriptionRepository(BaseRepository):
    resource = "entitlements.subscription"

    def get_for_user(self, session: Session, ctx: AuthContext, user_id: str) -> UserSubscription:
        stmt = self.apply_scope_query(select(UserSubscription).where(UserSubscription.user_id == user_id), ctx)
        subscription = session.scalar(stmt)
        if subscription is None:
            raise NotFoundError("subscription not found", code="subscription_not_found")
        return subscription

    def find_by_external_subscription(self, session: Session, external_subscription_id: str) -> UserSubscription | None:
        return session.scalar(
            select(UserSubscription).where(UserSubscription.external_subscription_id == external_subscription_id)
        )

    def find_by_external_customer(self, session: Session, external_customer_id: str) -> UserSubscription | None:
        return session.scalar(
            select(UserSubscription)
            .where(UserSubscription.external_customer_id == external_customer_id)
            .order_by(UserSubscription.updated_at.desc())
            .limit(1)
        )


class SubscriptionChangeLogRepository(BaseRepository):
    resource = "entitlements.subscription_change_log"
