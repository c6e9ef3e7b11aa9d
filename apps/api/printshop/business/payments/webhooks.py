from __future__ import annotations

import json
import logging
from typing import Any

import stripe
from pydantic import ValidationError as SchemaValidationError

from printshop.business.payments.schemas import KNOWN_EVENT_TYPES, PaymentEvent, payment_event_adapter
from printshop.core.config import get_settings
from printshop.core.errors import AuthorizationError, ValidationError
from printshop.metrics import observe_webhook_event


logger = logging.getLogger("printshop.payments.webhooks")


class WebhookSignatureError(AuthorizationError):
    code = "invalid_signature"
    status_code = 400


def verify_signature(payload: bytes, signature_header: str | None) -> None:
    """Reject the request unless the processor signed exactly this body."""

    if not signature_header:
        observe_webhook_event("unknown", "missing_signature")
        raise WebhookSignatureError("missing processor signature header", code="missing_signature")

    settings = get_settings()
    if not settings.stripe_webhook_secret:
        observe_webhook_event("unknown", "not_configured")
        raise WebhookSignatureError("webhook secret is not configured", code="webhook_not_configured")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature_header,
            settings.stripe_webhook_secret,
            settings.stripe_webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        observe_webhook_event("unknown", "invalid_signature")
        logger.warning("webhook.signature_rejected", extra={"error": str(exc)})
        raise WebhookSignatureError("processor signature verification failed") from exc


def parse_envelope(payload: bytes) -> dict[str, Any]:
    try:
        body = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("webhook body is not valid JSON", code="malformed_payload") from exc
    if not isinstance(body, dict) or not isinstance(body.get("type"), str) or not body.get("id"):
        raise ValidationError("webhook body is not a processor event", code="malformed_payload")
    return body


def parse_event(body: dict[str, Any]) -> PaymentEvent | None:
    """Validate a known event against its schema; ``None`` for types this service ignores."""

    event_type = body["type"]
    if event_type not in KNOWN_EVENT_TYPES:
        observe_webhook_event("unhandled", "ignored")
        logger.info("webhook.ignored", extra={"event_id": body.get("id"), "event_type": event_type})
        return None

    try:
        return payment_event_adapter.validate_python(body)
    except SchemaValidationError as exc:
        observe_webhook_event(event_type, "malformed")
        logger.warning("webhook.malformed", extra={"event_id": body.get("id"), "event_type": event_type, "error": str(exc)})
        raise ValidationError(
            f"malformed {event_type} payload",
            code="malformed_payload",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
