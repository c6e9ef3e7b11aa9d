from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printshop.business.entitlements.changelog import record_change
from printshop.business.entitlements.models import UserSubscription
from printshop.business.entitlements.repository import SubscriptionRepository
from printshop.business.entitlements.service import EntitlementStore, entitlement_store
from printshop.business.entitlements.tiers import (
    BILLING_PERIOD_DAYS,
    FREE_TIER,
    PAID_TIERS,
    PLAN_PRICE_CENTS,
    billing_period_length,
)
from printshop.business.invoices.models import Invoice, RefundRequest
from printshop.business.invoices.service import InvoiceLedger, invoice_ledger, money
from printshop.business.payments.models import ProcessedPaymentEvent
from printshop.business.payments.schemas import (
    ChargeRefunded,
    CheckoutCompleted,
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentEvent,
    RefundCreated,
    RefundUpdated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    WebhookAck,
)
from printshop.context import get_correlation_id
from printshop.core.config import get_settings
from printshop.core.database import commit_or_raise, utcnow
from printshop.core.errors import BusinessRuleError, ExternalServiceError, NotFoundError, ValidationError
from printshop.events import publish_on_commit
from printshop.integrations.processor import PaymentProcessor, from_timestamp
from printshop.metrics import observe_webhook_event
from printshop.platform.security.context import AuthContext, service_context


logger = logging.getLogger("printshop.payments")

PROCESSOR_INVOICE_SOURCE = "processor_invoice"
CHECKOUT_SESSION_SOURCE = "checkout_session"
PROCESSOR_REFUND_SOURCE = "processor_refund"

# Processor subscription statuses that keep the entitlement live.
_ACTIVE_STATUSES = {"active", "past_due"}

_HANDLERS = {
    CheckoutCompleted: "_on_checkout_completed",
    InvoicePaymentSucceeded: "_on_invoice_payment_succeeded",
    InvoicePaymentFailed: "_on_invoice_payment_failed",
    SubscriptionUpdated: "_on_subscription_updated",
    SubscriptionDeleted: "_on_subscription_deleted",
    ChargeRefunded: "_on_charge_refunded",
    RefundCreated: "_on_refund_succeeded",
    RefundUpdated: "_on_refund_succeeded",
}


def cents_to_amount(value: int | None) -> Decimal:
    return money(Decimal(value or 0) / Decimal(100))


def map_processor_status(status: str, *, cancel_at_period_end: bool = False) -> str:
    if cancel_at_period_end and status in _ACTIVE_STATUSES | {"trialing"}:
        return "cancelled"
    if status in _ACTIVE_STATUSES:
        return "active"
    if status == "trialing":
        return "trial"
    return "cancelled"


@dataclass(slots=True)
class PaymentEventReconciler:
    """Applies verified processor events to the entitlement store and invoice ledger.

    Every handler runs inside one transaction together with the
    ``ProcessedPaymentEvent`` row, so an event is either fully applied and
    remembered, or neither.
    """

    store: EntitlementStore = field(default_factory=lambda: entitlement_store)
    ledger: InvoiceLedger = field(default_factory=lambda: invoice_ledger)
    subscription_repository: SubscriptionRepository = SubscriptionRepository()

    def handle_event(self, session: Session, event: PaymentEvent, processor: PaymentProcessor) -> WebhookAck:
        if session.scalar(select(ProcessedPaymentEvent.id).where(ProcessedPaymentEvent.event_id == event.id)) is not None:
            observe_webhook_event(event.type, "duplicate")
            logger.info("webhook.duplicate", extra={"event_id": event.id, "event_type": event.type})
            return WebhookAck(duplicate=True, event_type=event.type)

        ctx = service_context(get_correlation_id())
        handler = getattr(self, _HANDLERS[type(event)])
        outcome = "applied"
        try:
            user_id = handler(session, ctx, event, processor)
        except (NotFoundError, BusinessRuleError, ValidationError) as exc:
            session.rollback()
            user_id = None
            outcome = "skipped"
            logger.warning(
                "webhook.not_applied",
                extra={"event_id": event.id, "event_type": event.type, "error": exc.message, "outcome": exc.code},
            )

        session.add(
            ProcessedPaymentEvent(
                event_id=event.id,
                event_type=event.type,
                user_id=user_id,
                processor_created_at=from_timestamp(event.created),
            )
        )
        try:
            commit_or_raise(session)
        except IntegrityError:
            # A concurrent delivery of the same event won the insert.
            session.rollback()
            observe_webhook_event(event.type, "duplicate")
            return WebhookAck(duplicate=True, event_type=event.type)

        observe_webhook_event(event.type, outcome)
        logger.info(
            "webhook.processed",
            extra={"event_id": event.id, "event_type": event.type, "user_id": user_id, "outcome": outcome},
        )
        return WebhookAck(handled=outcome == "applied", event_type=event.type)

    def resolve_subscription(
        self,
        session: Session,
        *,
        user_id: str | None = None,
        external_subscription_id: str | None = None,
        external_customer_id: str | None = None,
    ) -> UserSubscription | None:
        if user_id:
            found = session.scalar(select(UserSubscription).where(UserSubscription.user_id == user_id))
            if found is not None:
                return found
        if external_subscription_id:
            found = self.subscription_repository.find_by_external_subscription(session, external_subscription_id)
            if found is not None:
                return found
        if external_customer_id:
            return self.subscription_repository.find_by_external_customer(session, external_customer_id)
        return None

    def _require_subscription(self, session: Session, **lookup: str | None) -> UserSubscription:
        subscription = self.resolve_subscription(session, **lookup)
        if subscription is None:
            raise NotFoundError("no local subscription matches the processor event", code="subscription_not_found")
        return subscription

    def _on_checkout_completed(
        self,
        session: Session,
        ctx: AuthContext,
        event: CheckoutCompleted,
        processor: PaymentProcessor,
    ) -> str:
        checkout = event.data.obj
        user_id = checkout.metadata.get("userId") or checkout.client_reference_id
        tier = checkout.metadata.get("tier")
        billing_period = checkout.metadata.get("billingPeriod")
        if not user_id or not tier or not billing_period:
            raise BusinessRuleError(
                "checkout session is missing userId, tier or billingPeriod metadata",
                code="checkout_metadata_missing",
            )
        if tier not in PAID_TIERS or billing_period not in BILLING_PERIOD_DAYS:
            raise BusinessRuleError(
                f"checkout session carries unsupported plan {tier}/{billing_period}",
                code="checkout_plan_invalid",
            )

        subscription = self.resolve_subscription(session, user_id=user_id)
        if subscription is None:
            subscription = UserSubscription(user_id=user_id, tier=FREE_TIER, status="active", starts_at=utcnow())
            session.add(subscription)
            record_change(session, ctx, user_id, "provisioned", previous_tier=None, new_tier=FREE_TIER)
            session.flush()
        else:
            self.store.grace_manager.expire_if_due(session, ctx, subscription)

        now = utcnow()
        next_billing_date = None
        if checkout.subscription:
            try:
                next_billing_date = processor.retrieve_subscription(checkout.subscription).current_period_end
            except ExternalServiceError as exc:
                logger.warning(
                    "webhook.subscription_lookup_failed",
                    extra={"event_id": event.id, "external_reference": checkout.subscription, "error": exc.message},
                )

        previous_tier = subscription.tier
        subscription.tier = tier
        subscription.status = "active"
        subscription.billing_period = billing_period
        subscription.is_paid_subscription = True
        if checkout.subscription:
            subscription.external_subscription_id = checkout.subscription
        if checkout.customer:
            subscription.external_customer_id = checkout.customer
        subscription.expires_at = now + billing_period_length(billing_period)
        subscription.next_billing_date = next_billing_date or subscription.expires_at
        subscription.last_payment_date = now
        if subscription.grace_period_end is not None or subscription.is_read_only:
            self.store.grace_manager.clear(subscription)

        record_change(
            session,
            ctx,
            user_id,
            "checkout_completed",
            previous_tier=previous_tier,
            new_tier=tier,
            reason="processor checkout completed",
            notes={
                "checkout_session_id": checkout.id,
                "external_subscription_id": checkout.subscription,
                "billing_period": billing_period,
            },
        )
        publish_on_commit(
            session,
            {
                "event_type": "subscription.tier_changed",
                "user_id": user_id,
                "previous_tier": previous_tier,
                "tier": tier,
                "change_type": "checkout_completed",
            },
        )

        if checkout.invoice:
            source_type, source_id = PROCESSOR_INVOICE_SOURCE, checkout.invoice
        else:
            source_type, source_id = CHECKOUT_SESSION_SOURCE, checkout.id
        self.ledger.record_charge(
            session,
            user_id=user_id,
            amount=cents_to_amount(checkout.amount_total),
            currency=checkout.currency or get_settings().default_currency,
            status="paid",
            tier=tier,
            billing_period=billing_period,
            source_type=source_type,
            source_id=source_id,
            notes=f"Checkout session {checkout.id}",
        )
        return user_id

    def _on_invoice_payment_succeeded(
        self,
        session: Session,
        ctx: AuthContext,
        event: InvoicePaymentSucceeded,
        processor: PaymentProcessor,
    ) -> str:
        processor_invoice = event.data.obj
        subscription = self._require_subscription(
            session,
            user_id=processor_invoice.metadata.get("userId"),
            external_subscription_id=processor_invoice.subscription,
            external_customer_id=processor_invoice.customer,
        )

        invoice, created = self.ledger.record_charge(
            session,
            user_id=subscription.user_id,
            amount=cents_to_amount(processor_invoice.amount_paid),
            currency=processor_invoice.currency or get_settings().default_currency,
            status="paid",
            tier=subscription.tier,
            billing_period=subscription.billing_period,
            source_type=PROCESSOR_INVOICE_SOURCE,
            source_id=processor_invoice.id,
            notes=f"Processor invoice {processor_invoice.id}",
        )
        if not created and invoice.status == "pending":
            self.ledger.transition(invoice, "paid")

        if processor_invoice.subscription is None or processor_invoice.subscription == subscription.external_subscription_id:
            next_billing_date = from_timestamp(processor_invoice.period_end)
            if next_billing_date is None and processor_invoice.subscription:
                try:
                    next_billing_date = processor.retrieve_subscription(processor_invoice.subscription).current_period_end
                except ExternalServiceError as exc:
                    logger.warning(
                        "webhook.subscription_lookup_failed",
                        extra={"event_id": event.id, "external_reference": processor_invoice.subscription, "error": exc.message},
                    )
            subscription.last_payment_date = utcnow()
            if next_billing_date is not None:
                subscription.next_billing_date = next_billing_date

        record_change(
            session,
            ctx,
            subscription.user_id,
            "payment_succeeded",
            previous_tier=subscription.tier,
            new_tier=subscription.tier,
            notes={"processor_invoice_id": processor_invoice.id, "invoice_number": invoice.invoice_number},
        )
        return subscription.user_id

    def _on_invoice_payment_failed(
        self,
        session: Session,
        ctx: AuthContext,
        event: InvoicePaymentFailed,
        processor: PaymentProcessor,
    ) -> str:
        processor_invoice = event.data.obj
        subscription = self._require_subscription(
            session,
            user_id=processor_invoice.metadata.get("userId"),
            external_subscription_id=processor_invoice.subscription,
            external_customer_id=processor_invoice.customer,
        )

        invoice = self.ledger.find_by_source(session, PROCESSOR_INVOICE_SOURCE, processor_invoice.id)
        if invoice is None:
            invoice = self.ledger.latest_for_user(session, subscription.user_id, status="pending")
        if invoice is not None:
            if invoice.status == "pending":
                self.ledger.transition(invoice, "failed")
        else:
            invoice, _ = self.ledger.record_charge(
                session,
                user_id=subscription.user_id,
                amount=cents_to_amount(processor_invoice.amount_due),
                currency=processor_invoice.currency or get_settings().default_currency,
                status="failed",
                tier=subscription.tier,
                billing_period=subscription.billing_period,
                source_type=PROCESSOR_INVOICE_SOURCE,
                source_id=processor_invoice.id,
                notes=f"Payment failed for processor invoice {processor_invoice.id}",
            )

        # Repeated payment failures never downgrade here; dunning belongs to the processor.
        record_change(
            session,
            ctx,
            subscription.user_id,
            "payment_failed",
            previous_tier=subscription.tier,
            new_tier=subscription.tier,
            notes={"processor_invoice_id": processor_invoice.id, "invoice_number": invoice.invoice_number},
        )
        return subscription.user_id

    def _on_subscription_updated(
        self,
        session: Session,
        ctx: AuthContext,
        event: SubscriptionUpdated,
        processor: PaymentProcessor,
    ) -> str:
        remote = event.data.obj
        subscription = self._require_subscription(
            session,
            user_id=remote.metadata.get("userId"),
            external_subscription_id=remote.id,
            external_customer_id=remote.customer,
        )
        if subscription.external_subscription_id != remote.id:
            logger.info(
                "webhook.stale_subscription_event",
                extra={"event_id": event.id, "user_id": subscription.user_id, "external_reference": remote.id},
            )
            return subscription.user_id

        event_time = from_timestamp(event.created) or utcnow()
        if subscription.processor_synced_at is not None and event_time < subscription.processor_synced_at:
            logger.info(
                "webhook.out_of_order_event",
                extra={"event_id": event.id, "user_id": subscription.user_id, "external_reference": remote.id},
            )
            return subscription.user_id

        self.store.grace_manager.expire_if_due(session, ctx, subscription)
        previous_status = subscription.status
        subscription.status = map_processor_status(remote.status, cancel_at_period_end=remote.cancel_at_period_end)
        period_end = from_timestamp(remote.period_end)
        if period_end is not None:
            subscription.expires_at = period_end
            subscription.next_billing_date = period_end
        subscription.processor_synced_at = event_time

        record_change(
            session,
            ctx,
            subscription.user_id,
            "processor_subscription_updated",
            previous_tier=subscription.tier,
            new_tier=subscription.tier,
            notes={
                "external_subscription_id": remote.id,
                "processor_status": remote.status,
                "previous_status": previous_status,
                "status": subscription.status,
                "cancel_at_period_end": remote.cancel_at_period_end,
            },
        )
        return subscription.user_id

    def _on_subscription_deleted(
        self,
        session: Session,
        ctx: AuthContext,
        event: SubscriptionDeleted,
        processor: PaymentProcessor,
    ) -> str:
        remote = event.data.obj
        subscription = self._require_subscription(
            session,
            user_id=remote.metadata.get("userId"),
            external_subscription_id=remote.id,
            external_customer_id=remote.customer,
        )
        # The row may have been relinked to a replacement subscription (or unlinked) since the event was sent.
        if subscription.external_subscription_id != remote.id:
            logger.info(
                "webhook.stale_subscription_deleted",
                extra={"event_id": event.id, "user_id": subscription.user_id, "external_reference": remote.id},
            )
            return subscription.user_id

        updated = self.store.apply_tier_change(
            session,
            ctx,
            subscription.user_id,
            FREE_TIER,
            reset_billing=True,
            reason="processor subscription deleted",
            notes={"external_subscription_id": remote.id},
            change_type="processor_subscription_deleted",
            commit=False,
        )
        updated.processor_synced_at = from_timestamp(event.created) or utcnow()
        return updated.user_id

    def _on_charge_refunded(
        self,
        session: Session,
        ctx: AuthContext,
        event: ChargeRefunded,
        processor: PaymentProcessor,
    ) -> str | None:
        charge = event.data.obj
        if charge.amount_refunded <= 0:
            logger.info("webhook.refund_without_amount", extra={"event_id": event.id, "external_reference": charge.id})
            return None
        subscription = self._require_subscription(
            session,
            user_id=charge.metadata.get("userId"),
            external_customer_id=charge.customer,
        )
        # amount_refunded is cumulative for the charge; book only what no refund row covers yet.
        booked = self.ledger.refunded_against_charge(session, charge.id)
        outstanding = cents_to_amount(charge.amount_refunded) - booked
        if outstanding <= 0:
            logger.info(
                "webhook.refund_already_recorded",
                extra={"event_id": event.id, "user_id": subscription.user_id, "external_reference": charge.id},
            )
            return subscription.user_id
        self._apply_refund(
            session,
            ctx,
            subscription.user_id,
            amount=outstanding,
            currency=charge.currency,
            processor_invoice_id=charge.invoice,
            source_id=charge.id if booked == 0 else f"{charge.id}:{charge.amount_refunded}",
            charge_id=charge.id,
            refund_request_id=charge.metadata.get("refundRequestId"),
        )
        return subscription.user_id

    def _on_refund_succeeded(
        self,
        session: Session,
        ctx: AuthContext,
        event: RefundCreated | RefundUpdated,
        processor: PaymentProcessor,
    ) -> str | None:
        refund = event.data.obj
        if refund.status != "succeeded":
            logger.info(
                "webhook.refund_not_succeeded",
                extra={"event_id": event.id, "external_reference": refund.id, "status": refund.status},
            )
            return None

        refund_request = self._find_refund_request(session, refund.metadata.get("refundRequestId"))
        user_id = refund.metadata.get("userId") or (refund_request.user_id if refund_request is not None else None)
        if not user_id:
            raise NotFoundError("refund carries no user reference", code="refund_user_unknown")
        if refund.charge and self.ledger.find_by_source(session, PROCESSOR_REFUND_SOURCE, refund.charge) is not None:
            # charge.refunded for the same charge was delivered first.
            logger.info(
                "webhook.refund_already_recorded",
                extra={"event_id": event.id, "user_id": user_id, "external_reference": refund.id},
            )
            return user_id
        self._apply_refund(
            session,
            ctx,
            user_id,
            amount=cents_to_amount(refund.amount),
            currency=refund.currency,
            processor_invoice_id=None,
            source_id=refund.id,
            charge_id=refund.charge,
            refund_request_id=refund.metadata.get("refundRequestId"),
        )
        return user_id

    def _apply_refund(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        *,
        amount: Decimal,
        currency: str | None,
        processor_invoice_id: str | None,
        source_id: str,
        charge_id: str | None,
        refund_request_id: str | None,
    ) -> None:
        refund_request = self._find_refund_request(session, refund_request_id)
        if refund_request is not None and refund_request.status == "processed":
            logger.info(
                "webhook.refund_already_processed",
                extra={"user_id": user_id, "external_reference": source_id, "status": refund_request.status},
            )
            return

        original: Invoice | None = None
        if processor_invoice_id:
            original = self.ledger.find_by_source(session, PROCESSOR_INVOICE_SOURCE, processor_invoice_id)
        if original is None:
            original = self.ledger.latest_for_user(session, user_id, status="paid")
        if original is None:
            original = self.ledger.latest_for_user(session, user_id, status="refunded")
        if original is None:
            raise NotFoundError("no invoice to refund for this user", code="original_invoice_not_found")

        refund_invoice, created = self.ledger.record_refund(
            session,
            original,
            amount,
            source_type=PROCESSOR_REFUND_SOURCE,
            source_id=source_id,
            detail=f"Processor refund {source_id}",
            charge_id=charge_id,
        )

        if refund_request is None:
            refund_request = session.scalar(
                select(RefundRequest)
                .where(
                    RefundRequest.user_id == user_id,
                    RefundRequest.status.in_(["pending", "approved"]),
                    RefundRequest.amount == money(amount),
                )
                .order_by(RefundRequest.created_at.asc())
                .limit(1)
            )
        if refund_request is not None:
            if refund_request.status == "pending":
                self.ledger.transition_refund_request(refund_request, "approved")
            self.ledger.transition_refund_request(refund_request, "processed")
            refund_request.external_refund_id = source_id
            refund_request.invoice_id = refund_request.invoice_id or original.id
        elif created:
            session.add(
                RefundRequest(
                    user_id=user_id,
                    invoice_id=original.id,
                    amount=money(amount),
                    currency=(currency or original.currency).upper(),
                    reason="other",
                    description=f"Refund processed by the payment processor ({source_id})",
                    status="processed",
                    external_refund_id=source_id,
                    processed_at=utcnow(),
                )
            )

        if created:
            subscription = self.resolve_subscription(session, user_id=user_id)
            tier = subscription.tier if subscription is not None else None
            record_change(
                session,
                ctx,
                user_id,
                "refund",
                previous_tier=tier,
                new_tier=tier,
                reason="processor refund",
                notes={
                    "invoice_number": original.invoice_number,
                    "refund_invoice_number": refund_invoice.invoice_number,
                    "amount": str(money(amount)),
                    "external_refund_id": source_id,
                },
            )

    @staticmethod
    def _find_refund_request(session: Session, refund_request_id: str | None) -> RefundRequest | None:
        if not refund_request_id:
            return None
        try:
            request_uuid = uuid.UUID(refund_request_id)
        except ValueError:
            return None
        return session.get(RefundRequest, request_uuid)

    def create_checkout_session(
        self,
        session: Session,
        ctx: AuthContext,
        payload: CheckoutSessionCreate,
        processor: PaymentProcessor,
    ) -> CheckoutSessionResponse:
        if payload.tier not in PAID_TIERS:
            raise ValidationError("checkout is only available for paid tiers", code="invalid_tier")

        subscription = self.resolve_subscription(session, user_id=ctx.user_id)
        if subscription is None:
            subscription = self.store.provision_subscription(session, ctx, ctx.user_id)
        if subscription.is_paid_subscription and subscription.tier == payload.tier and subscription.status == "active":
            raise BusinessRuleError("already subscribed to the requested plan", code="already_subscribed")

        metadata = {"userId": ctx.user_id, "tier": payload.tier, "billingPeriod": payload.billing_period}
        checkout = processor.create_checkout_session(
            tier=payload.tier,
            billing_period=payload.billing_period,
            unit_amount_cents=PLAN_PRICE_CENTS[payload.tier][payload.billing_period],
            currency=get_settings().default_currency,
            metadata=metadata,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
        logger.info(
            "checkout.session_created",
            extra={"user_id": ctx.user_id, "tier": payload.tier, "external_reference": checkout.id},
        )
        return CheckoutSessionResponse(session_id=checkout.id, url=checkout.url)


payment_event_reconciler = PaymentEventReconciler()
