from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Protocol, TypeVar

import stripe

from printshop.core.config import get_settings
from printshop.core.errors import ExternalServiceError
from printshop.metrics import observe_processor_call
from printshop.otel import processor_span


logger = logging.getLogger("printshop.processor")

T = TypeVar("T")

_INTERVALS = {"monthly": "month", "annual": "year"}


@dataclass(slots=True)
class ProcessorSubscription:
    id: str
    customer_id: str | None
    status: str
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    item_id: str | None = None


@dataclass(slots=True)
class ProcessorCharge:
    id: str
    amount: Decimal
    currency: str
    paid: bool = True
    refunded: bool = False
    invoice_id: str | None = None


@dataclass(slots=True)
class ProcessorRefund:
    id: str
    status: str
    amount: Decimal
    charge_id: str | None = None


@dataclass(slots=True)
class CheckoutSession:
    id: str
    url: str | None
    metadata: dict[str, str] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription: ...

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> ProcessorSubscription: ...

    def create_price(self, *, tier: str, billing_period: str, unit_amount_cents: int, currency: str) -> str: ...

    def create_subscription(self, *, customer_id: str, price_id: str, metadata: dict[str, str]) -> ProcessorSubscription: ...

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        price_id: str,
        proration_behavior: str,
        reset_billing_anchor: bool,
    ) -> ProcessorSubscription: ...

    def create_checkout_session(
        self,
        *,
        tier: str,
        billing_period: str,
        unit_amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession: ...

    def list_charges(self, customer_id: str, *, limit: int = 10) -> list[ProcessorCharge]: ...

    def create_refund(self, *, charge_id: str, amount_cents: int, metadata: dict[str, str]) -> ProcessorRefund: ...


def from_timestamp(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    try:
        value = obj[name]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


class StripePaymentProcessor:
    """Outbound Stripe calls, each bounded by the configured request timeout."""

    def __init__(self, api_key: str, *, timeout_seconds: float, max_network_retries: int = 0) -> None:
        self._api_key = api_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        stripe.max_network_retries = max_network_retries

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        raw = self._call(
            "retrieve_subscription",
            lambda: stripe.Subscription.retrieve(subscription_id, api_key=self._api_key),
            subscription_id=subscription_id,
        )
        return self._to_subscription(raw)

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> ProcessorSubscription:
        if at_period_end:
            raw = self._call(
                "cancel_subscription_at_period_end",
                lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=True, api_key=self._api_key),
                subscription_id=subscription_id,
            )
        else:
            raw = self._call(
                "cancel_subscription",
                lambda: stripe.Subscription.cancel(subscription_id, api_key=self._api_key),
                subscription_id=subscription_id,
            )
        return self._to_subscription(raw)

    def create_price(self, *, tier: str, billing_period: str, unit_amount_cents: int, currency: str) -> str:
        raw = self._call(
            "create_price",
            lambda: stripe.Price.create(
                unit_amount=unit_amount_cents,
                currency=currency.lower(),
                recurring={"interval": _INTERVALS[billing_period]},
                product_data={"name": f"{tier} ({billing_period})"},
                api_key=self._api_key,
            ),
            tier=tier,
            billing_period=billing_period,
        )
        return str(_field(raw, "id"))

    def create_subscription(self, *, customer_id: str, price_id: str, metadata: dict[str, str]) -> ProcessorSubscription:
        raw = self._call(
            "create_subscription",
            lambda: stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                metadata=metadata,
                api_key=self._api_key,
            ),
            customer_id=customer_id,
        )
        return self._to_subscription(raw)

    def change_subscription_price(
        self,
        subscription_id: str,
        *,
        price_id: str,
        proration_behavior: str,
        reset_billing_anchor: bool,
    ) -> ProcessorSubscription:
        current = self.retrieve_subscription(subscription_id)
        if current.item_id is None:
            raise ExternalServiceError(
                "processor subscription has no items to update",
                operation="change_subscription_price",
            )
        params: dict[str, Any] = {
            "items": [{"id": current.item_id, "price": price_id}],
            "proration_behavior": proration_behavior,
        }
        if reset_billing_anchor:
            params["billing_cycle_anchor"] = "now"
        raw = self._call(
            "change_subscription_price",
            lambda: stripe.Subscription.modify(subscription_id, api_key=self._api_key, **params),
            subscription_id=subscription_id,
        )
        return self._to_subscription(raw)

    def create_checkout_session(
        self,
        *,
        tier: str,
        billing_period: str,
        unit_amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        raw = self._call(
            "create_checkout_session",
            lambda: stripe.checkout.Session.create(
                mode="subscription",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": unit_amount_cents,
                            "recurring": {"interval": _INTERVALS[billing_period]},
                            "product_data": {"name": f"{tier} ({billing_period})"},
                        },
                        "quantity": 1,
                    }
                ],
                metadata=metadata,
                subscription_data={"metadata": metadata},
                client_reference_id=metadata.get("userId"),
                success_url=success_url,
                cancel_url=cancel_url,
                api_key=self._api_key,
            ),
            tier=tier,
            billing_period=billing_period,
        )
        return CheckoutSession(id=str(_field(raw, "id")), url=_field(raw, "url"), metadata=dict(metadata))

    def list_charges(self, customer_id: str, *, limit: int = 10) -> list[ProcessorCharge]:
        raw = self._call(
            "list_charges",
            lambda: stripe.Charge.list(customer=customer_id, limit=limit, api_key=self._api_key),
            customer_id=customer_id,
        )
        charges: list[ProcessorCharge] = []
        for item in _field(raw, "data", []):
            charges.append(
                ProcessorCharge(
                    id=str(_field(item, "id")),
                    amount=Decimal(int(_field(item, "amount", 0))) / Decimal(100),
                    currency=str(_field(item, "currency", "")).upper(),
                    paid=bool(_field(item, "paid", False)),
                    refunded=bool(_field(item, "refunded", False)),
                    invoice_id=_field(item, "invoice"),
                )
            )
        return charges

    def create_refund(self, *, charge_id: str, amount_cents: int, metadata: dict[str, str]) -> ProcessorRefund:
        raw = self._call(
            "create_refund",
            lambda: stripe.Refund.create(charge=charge_id, amount=amount_cents, metadata=metadata, api_key=self._api_key),
            charge_id=charge_id,
        )
        return ProcessorRefund(
            id=str(_field(raw, "id")),
            status=str(_field(raw, "status", "pending")),
            amount=Decimal(int(_field(raw, "amount", amount_cents))) / Decimal(100),
            charge_id=charge_id,
        )

    def _call(self, operation: str, fn: Callable[[], T], **attributes: str) -> T:
        with processor_span(operation, **attributes) as span:
            if not self._api_key:
                observe_processor_call(operation, "not_configured", 0.0)
                raise ExternalServiceError("payment processor is not configured", operation=operation)

            started = time.perf_counter()
            try:
                result = fn()
            except stripe.StripeError as exc:
                duration = time.perf_counter() - started
                observe_processor_call(operation, "error", duration)
                span.record_exception(exc)
                logger.warning(
                    "processor.call_failed",
                    extra={"operation": operation, "error": str(exc), "duration_ms": round(duration * 1000, 2)},
                )
                raise ExternalServiceError(
                    "payment processor request failed",
                    operation=operation,
                    details={"processor_error": exc.__class__.__name__},
                ) from exc

            observe_processor_call(operation, "ok", time.perf_counter() - started)
            return result

    @staticmethod
    def _to_subscription(raw: Any) -> ProcessorSubscription:
        items = _field(_field(raw, "items", {}), "data", [])
        first_item = items[0] if items else None
        period_end = _field(raw, "current_period_end")
        if period_end is None and first_item is not None:
            period_end = _field(first_item, "current_period_end")
        return ProcessorSubscription(
            id=str(_field(raw, "id")),
            customer_id=_field(raw, "customer"),
            status=str(_field(raw, "status", "")),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(_field(raw, "cancel_at_period_end", False)),
            item_id=_field(first_item, "id") if first_item is not None else None,
        )


@lru_cache
def _default_processor() -> StripePaymentProcessor:
    settings = get_settings()
    return StripePaymentProcessor(
        settings.stripe_secret_key,
        timeout_seconds=settings.stripe_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
    )


def get_payment_processor() -> PaymentProcessor:
    return _default_processor()
