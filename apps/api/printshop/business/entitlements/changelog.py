from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from printshop.business.entitlements.models import SubscriptionChangeLog
from printshop.context import get_correlation_id
from printshop.platform.security.context import AuthContext


def record_change(
    session: Session,
    ctx: AuthContext,
    user_id: str,
    change_type: str,
    *,
    previous_tier: str | None,
    new_tier: str | None,
    reason: str | None = None,
    notes: dict[str, Any] | None = None,
) -> SubscriptionChangeLog:
    """Append an audit row in the caller's transaction; the caller commits."""

    row = SubscriptionChangeLog(
        user_id=user_id,
        actor_id=ctx.actor_id,
        change_type=change_type,
        previous_tier=previous_tier,
        new_tier=new_tier,
        reason=reason,
        notes=notes,
        correlation_id=ctx.correlation_id or get_correlation_id(),
    )
    session.add(row)
    return row
