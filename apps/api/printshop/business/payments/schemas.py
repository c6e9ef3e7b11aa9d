from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from printshop.business.entitlements.schemas import BillingPeriod, Tier


class ProcessorObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSessionObject(ProcessorObject):
    customer: str | None = None
    subscription: str | None = None
    invoice: str | None = None
    client_reference_id: str | None = None
    amount_total: int | None = None
    currency: str | None = None


class InvoicePeriod(BaseModel):
    start: int | None = None
    end: int | None = None


class InvoiceLine(BaseModel):
    model_config = ConfigDict(extra="ignore")

    period: InvoicePeriod | None = None


class InvoiceLines(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[InvoiceLine] = Field(default_factory=list)


class InvoiceObject(ProcessorObject):
    customer: str | None = None
    subscription: str | None = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: str | None = None
    lines: InvoiceLines | None = None

    @property
    def period_end(self) -> int | None:
        if self.lines is None:
            return None
        ends = [line.period.end for line in self.lines.data if line.period is not None and line.period.end is not None]
        return max(ends) if ends else None


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    current_period_end: int | None = None


class SubscriptionItems(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(ProcessorObject):
    customer: str | None = None
    status: str
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    items: SubscriptionItems | None = None

    @property
    def period_end(self) -> int | None:
        if self.current_period_end is not None:
            return self.current_period_end
        if self.items is not None:
            ends = [item.current_period_end for item in self.items.data if item.current_period_end is not None]
            return max(ends) if ends else None
        return None


class ChargeObject(ProcessorObject):
    customer: str | None = None
    invoice: str | None = None
    amount: int = 0
    amount_refunded: int = 0
    currency: str | None = None
    refunded: bool = False


class RefundObject(ProcessorObject):
    charge: str | None = None
    amount: int = 0
    currency: str | None = None
    status: str | None = None


class _EventBase(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    created: int | None = None


class CheckoutSessionData(BaseModel):
    obj: CheckoutSessionObject = Field(alias="object")


class InvoiceData(BaseModel):
    obj: InvoiceObject = Field(alias="object")


class SubscriptionData(BaseModel):
    obj: SubscriptionObject = Field(alias="object")


class ChargeData(BaseModel):
    obj: ChargeObject = Field(alias="object")


class RefundData(BaseModel):
    obj: RefundObject = Field(alias="object")


class CheckoutCompleted(_EventBase):
    type: Literal["checkout.session.completed"]
    data: CheckoutSessionData


class InvoicePaymentSucceeded(_EventBase):
    type: Literal["invoice.payment_succeeded"]
    data: InvoiceData


class InvoicePaymentFailed(_EventBase):
    type: Literal["invoice.payment_failed"]
    data: InvoiceData


class SubscriptionUpdated(_EventBase):
    type: Literal["customer.subscription.updated"]
    data: SubscriptionData


class SubscriptionDeleted(_EventBase):
    type: Literal["customer.subscription.deleted"]
    data: SubscriptionData


class ChargeRefunded(_EventBase):
    type: Literal["charge.refunded"]
    data: ChargeData


class RefundCreated(_EventBase):
    type: Literal["refund.created"]
    data: RefundData


class RefundUpdated(_EventBase):
    type: Literal["refund.updated"]
    data: RefundData


PaymentEvent = Annotated[
    Union[
        CheckoutCompleted,
        InvoicePaymentSucceeded,
        InvoicePaymentFailed,
        SubscriptionUpdated,
        SubscriptionDeleted,
        ChargeRefunded,
        RefundCreated,
        RefundUpdated,
    ],
    Field(discriminator="type"),
]

payment_event_adapter: TypeAdapter[PaymentEvent] = TypeAdapter(PaymentEvent)

KNOWN_EVENT_TYPES = frozenset(
    {
        "checkout.session.completed",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "charge.refunded",
        "refund.created",
        "refund.updated",
    }
)


class WebhookAck(BaseModel):
    received: bool = True
    handled: bool = True
    duplicate: bool = False
    event_type: str | None = None


class CheckoutSessionCreate(BaseModel):
    tier: Tier
    billing_period: BillingPeriod
    success_url: str = Field(min_length=1, max_length=2048)
    cancel_url: str = Field(min_length=1, max_length=2048)


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: str | None
