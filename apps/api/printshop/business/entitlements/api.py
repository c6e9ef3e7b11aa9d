from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from printshop.business.entitlements.schemas import CancelSubscriptionRequest, SubscriptionChangeRead, SubscriptionRead
from printshop.business.entitlements.service import entitlement_store, to_subscription_read
from printshop.core.database import get_db
from printshop.integrations.processor import PaymentProcessor, get_payment_processor
from printshop.platform.security.context import AuthContext
from printshop.platform.security.dependencies import get_auth_context


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/me", response_model=SubscriptionRead)
def get_my_subscription(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    subscription = entitlement_store.load_for_update(db, ctx, ctx.user_id)
    if db.dirty or db.new:
        # A lapsed grace window was closed on read.
        db.commit()
        db.refresh(subscription)
    return to_subscription_read(subscription)


@router.post("/me", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def provision_my_subscription(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return to_subscription_read(entitlement_store.provision_subscription(db, ctx, ctx.user_id))


@router.post("/me/cancel", response_model=SubscriptionRead)
def cancel_my_subscription(
    payload: CancelSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> SubscriptionRead:
    subscription = entitlement_store.cancel_subscription(
        db,
        ctx,
        ctx.user_id,
        processor,
        immediate=payload.immediate,
        reason=payload.reason,
    )
    return to_subscription_read(subscription)


@router.get("/me/changes", response_model=list[SubscriptionChangeRead])
def list_my_changes(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[SubscriptionChangeRead]:
    return entitlement_store.list_changes(db, ctx, ctx.user_id)
