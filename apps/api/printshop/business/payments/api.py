from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session

from printshop.business.payments.schemas import CheckoutSessionCreate, CheckoutSessionResponse, WebhookAck
from printshop.business.payments.service import payment_event_reconciler
from printshop.business.payments.webhooks import parse_envelope, parse_event, verify_signature
from printshop.core.database import get_db
from printshop.integrations.processor import PaymentProcessor, get_payment_processor
from printshop.platform.security.context import AuthContext
from printshop.platform.security.dependencies import get_auth_context


logger = logging.getLogger("printshop.payments.api")

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/checkout-sessions", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> CheckoutSessionResponse:
    return payment_event_reconciler.create_checkout_session(db, ctx, payload, processor)


async def _raw_body(request: Request) -> bytes:
    return await request.body()


@router.post("/webhooks/stripe", response_model=WebhookAck)
def stripe_webhook(
    payload: bytes = Depends(_raw_body),
    stripe_signature: str | None = Header(default=None, alias="stripe-signature"),
    db: Session = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> WebhookAck:
    verify_signature(payload, stripe_signature)

    body = parse_envelope(payload)
    logger.info("webhook.received", extra={"event_id": body.get("id"), "event_type": body.get("type")})
    event = parse_event(body)
    if event is None:
        return WebhookAck(handled=False, event_type=body["type"])
    return payment_event_reconciler.handle_event(db, event, processor)
