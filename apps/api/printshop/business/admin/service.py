from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from printshop.business.admin.schemas import AdminActionResponse, ReconciliationIssueRead
from printshop.business.entitlements.changelog import record_change
from printshop.business.entitlements.models import UserSubscription
from printshop.business.entitlements.service import EntitlementStore, entitlement_store
from printshop.business.entitlements.tiers import (
    FREE_TIER,
    PLAN_PRICE_CENTS,
    billing_period_length,
    is_paid_tier,
    plan_price,
)
from printshop.business.grace.service import days_remaining
from printshop.business.invoices.models import Invoice, RefundRequest
from printshop.business.invoices.service import InvoiceLedger, invoice_ledger, money
from printshop.business.payments.models import ReconciliationIssue
from printshop.business.payments.reconciliation import commit_after_processor, record_reconciliation_issue
from printshop.core.config import get_settings
from printshop.core.database import commit_or_raise, utcnow
from printshop.core.errors import BillingError, BusinessRuleError, ExternalServiceError, NotFoundError, ValidationError
from printshop.integrations.processor import PaymentProcessor, ProcessorCharge
from printshop.platform.security.context import AuthContext


logger = logging.getLogger("printshop.admin")

_CENT = Decimal("0.01")


def annual_upgrade_proration(tier: str, next_billing_date: datetime | None, now: datetime) -> Decimal:
    """Annual price minus the unused value of the current monthly period."""

    monthly = plan_price(tier, "monthly")
    annual = plan_price(tier, "annual")
    unused_days = min(30, days_remaining(next_billing_date, now))
    unused_value = (monthly * Decimal(unused_days) / Decimal(30)).quantize(_CENT)
    return max(Decimal("0.00"), annual - unused_value)


def annual_downgrade_refund(tier: str, paid_at: datetime | None, now: datetime) -> tuple[int, Decimal]:
    """Unused whole months of an annual plan, excluding the month in progress, and their value."""

    days_used = max(0, (now - paid_at).days) if paid_at is not None else 0
    months_used = math.ceil(days_used / 30)
    refunded_months = max(0, 12 - months_used - 1)
    amount = (Decimal(refunded_months) * plan_price(tier, "annual") / Decimal(12)).quantize(_CENT)
    return refunded_months, amount


def _to_cents(amount: Decimal) -> int:
    return int((money(amount) * 100).to_integral_value())


@dataclass(slots=True)
class AdminBillingService:
    """Privileged overrides. Every call leaves a change log row, including failed attempts."""

    store: EntitlementStore = field(default_factory=lambda: entitlement_store)
    ledger: InvoiceLedger = field(default_factory=lambda: invoice_ledger)

    def _audited(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        change_type: str,
        operation: Callable[[], AdminActionResponse],
        notes: dict[str, Any] | None = None,
    ) -> AdminActionResponse:
        try:
            response = operation()
        except BillingError as exc:
            session.rollback()
            subscription = session.scalar(select(UserSubscription).where(UserSubscription.user_id == user_id))
            tier = subscription.tier if subscription is not None else None
            record_change(
                session,
                ctx,
                user_id,
                f"{change_type}_failed",
                previous_tier=tier,
                new_tier=tier,
                reason=exc.message,
                notes={**(notes or {}), "error": exc.code, **exc.details},
            )
            session.commit()
            logger.warning(
                "admin.operation_failed",
                extra={"user_id": user_id, "actor_id": ctx.actor_id, "operation": change_type, "error": exc.code},
            )
            raise
        logger.info("admin.operation_applied", extra={"user_id": user_id, "actor_id": ctx.actor_id, "operation": change_type})
        return response

    def admin_change_tier(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        new_tier: str,
        processor: PaymentProcessor,
        *,
        notes: str | None = None,
    ) -> AdminActionResponse:
        def operation() -> AdminActionResponse:
            subscription = self.store.load_for_update(session, ctx, user_id)
            previous_tier = subscription.tier
            if previous_tier == new_tier:
                raise BusinessRuleError(f"user is already on {new_tier}", code="same_tier")

            cancelled_external_id = None
            if subscription.is_paid_subscription and subscription.external_subscription_id:
                # Admin grants are not billed: paid billing ends before the local change.
                processor.cancel_subscription(subscription.external_subscription_id)
                cancelled_external_id = subscription.external_subscription_id

            self.store.apply_tier_change(
                session,
                ctx,
                user_id,
                new_tier,
                reset_billing=True,
                reason=notes or "admin tier change",
                notes={"admin_override": True, "cancelled_external_subscription_id": cancelled_external_id},
                change_type="admin_tier_change",
                commit=False,
            )
            self._commit(session, user_id, "admin_change_tier", cancelled_external_id)
            return AdminActionResponse(
                message=f"Tier changed from {previous_tier} to {new_tier}",
                details={
                    "previous_tier": previous_tier,
                    "new_tier": new_tier,
                    "cancelled_external_subscription_id": cancelled_external_id,
                },
            )

        return self._audited(session, ctx, user_id, "admin_tier_change", operation, {"new_tier": new_tier})

    def admin_change_billing_period(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        new_period: str,
        processor: PaymentProcessor,
        *,
        notes: str | None = None,
    ) -> AdminActionResponse:
        def operation() -> AdminActionResponse:
            subscription = self.store.load_for_update(session, ctx, user_id)
            if not is_paid_tier(subscription.tier):
                raise BusinessRuleError("free subscriptions have no billing period", code="free_tier")
            if subscription.billing_period == new_period:
                raise BusinessRuleError("subscription already on requested billing period", code="same_billing_period")

            if subscription.is_paid_subscription and subscription.external_subscription_id:
                if new_period == "annual":
                    return self._switch_to_annual(session, ctx, subscription, processor, notes)
                return self._switch_to_monthly(session, ctx, subscription, processor, notes)

            now = utcnow()
            previous_period = subscription.billing_period
            subscription.billing_period = new_period
            subscription.expires_at = now + billing_period_length(new_period)
            subscription.next_billing_date = subscription.expires_at
            record_change(
                session,
                ctx,
                user_id,
                "admin_billing_period_change",
                previous_tier=subscription.tier,
                new_tier=subscription.tier,
                reason=notes,
                notes={"previous_period": previous_period, "new_period": new_period, "processor_managed": False},
            )
            commit_or_raise(session)
            return AdminActionResponse(
                message=f"Billing period changed to {new_period}",
                details={"previous_period": previous_period, "new_period": new_period},
            )

        return self._audited(session, ctx, user_id, "admin_billing_period_change", operation, {"new_period": new_period})

    def _switch_to_annual(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: UserSubscription,
        processor: PaymentProcessor,
        notes: str | None,
    ) -> AdminActionResponse:
        now = utcnow()
        tier = subscription.tier
        external_id = subscription.external_subscription_id or ""
        proration = annual_upgrade_proration(tier, subscription.next_billing_date, now)

        price_id = processor.create_price(
            tier=tier,
            billing_period="annual",
            unit_amount_cents=PLAN_PRICE_CENTS[tier]["annual"],
            currency=get_settings().default_currency,
        )
        remote = processor.change_subscription_price(
            external_id,
            price_id=price_id,
            proration_behavior="always_invoice",
            reset_billing_anchor=True,
        )

        previous_period = subscription.billing_period
        subscription.billing_period = "annual"
        subscription.next_billing_date = remote.current_period_end or now + billing_period_length("annual")
        subscription.expires_at = subscription.next_billing_date
        details = {
            "previous_period": previous_period,
            "new_period": "annual",
            "price_id": price_id,
            "proration_amount": str(proration),
            "external_subscription_id": external_id,
        }
        record_change(
            session,
            ctx,
            subscription.user_id,
            "admin_billing_period_change",
            previous_tier=tier,
            new_tier=tier,
            reason=notes,
            notes=details,
        )
        self._commit(session, subscription.user_id, "admin_change_billing_period", external_id)
        return AdminActionResponse(message="Billing period changed to annual", details=details)

    def _switch_to_monthly(
        self,
        session: Session,
        ctx: AuthContext,
        subscription: UserSubscription,
        processor: PaymentProcessor,
        notes: str | None,
    ) -> AdminActionResponse:
        now = utcnow()
        user_id = subscription.user_id
        tier = subscription.tier
        old_external_id = subscription.external_subscription_id or ""
        customer_id = subscription.external_customer_id
        if not customer_id:
            raise BusinessRuleError("subscription has no processor customer", code="missing_processor_customer")
        refunded_months, refund_amount = annual_downgrade_refund(tier, subscription.last_payment_date or subscription.starts_at, now)

        price_id = processor.create_price(
            tier=tier,
            billing_period="monthly",
            unit_amount_cents=PLAN_PRICE_CENTS[tier]["monthly"],
            currency=get_settings().default_currency,
        )
        replacement = processor.create_subscription(
            customer_id=customer_id,
            price_id=price_id,
            metadata={"userId": user_id, "tier": tier, "billingPeriod": "monthly"},
        )

        # Relink before cancelling the old subscription so its deletion event is recognised as stale.
        previous_period = subscription.billing_period
        subscription.external_subscription_id = replacement.id
        subscription.billing_period = "monthly"
        subscription.next_billing_date = replacement.current_period_end or now + billing_period_length("monthly")
        subscription.expires_at = subscription.next_billing_date
        details: dict[str, Any] = {
            "previous_period": previous_period,
            "new_period": "monthly",
            "price_id": price_id,
            "previous_external_subscription_id": old_external_id,
            "external_subscription_id": replacement.id,
            "refunded_months": refunded_months,
            "refund_amount": str(refund_amount),
        }
        record_change(
            session,
            ctx,
            user_id,
            "admin_billing_period_change",
            previous_tier=tier,
            new_tier=tier,
            reason=notes,
            notes=details,
        )
        self._commit(session, user_id, "admin_change_billing_period", replacement.id)

        try:
            processor.cancel_subscription(old_external_id)
        except ExternalServiceError as exc:
            details["old_subscription_cancelled"] = False
            record_reconciliation_issue(
                session,
                user_id=user_id,
                operation="admin_cancel_replaced_subscription",
                external_reference=old_external_id,
                detail=f"replaced annual subscription could not be cancelled: {exc.message}",
                commit=True,
            )
        else:
            details["old_subscription_cancelled"] = True

        if refund_amount > 0:
            details["refund"] = self._refund_against_latest_charge(
                session,
                processor,
                user_id=user_id,
                customer_id=customer_id,
                amount=refund_amount,
                currency=get_settings().default_currency,
                metadata={"userId": user_id, "reason": "annual_to_monthly"},
                match_amount=False,
            )
        return AdminActionResponse(message="Billing period changed to monthly", details=details)

    def admin_process_refund_request(
        self,
        session: Session,
        ctx: AuthContext,
        request_id: uuid.UUID,
        action: str,
        processor: PaymentProcessor,
        *,
        admin_notes: str | None = None,
        refund_externally: bool = False,
    ) -> AdminActionResponse:
        request = session.get(RefundRequest, request_id)
        if request is None:
            raise NotFoundError("refund request not found", code="refund_request_not_found")
        user_id = request.user_id

        def operation() -> AdminActionResponse:
            if request.status != "pending":
                raise BusinessRuleError(
                    f"refund request is already {request.status}",
                    code="refund_request_not_pending",
                )
            request.admin_id = ctx.actor_id
            request.admin_notes = admin_notes
            subscription = session.scalar(select(UserSubscription).where(UserSubscription.user_id == user_id))
            tier = subscription.tier if subscription is not None else None

            if action == "reject":
                self.ledger.transition_refund_request(request, "rejected")
                record_change(
                    session,
                    ctx,
                    user_id,
                    "refund_rejected",
                    previous_tier=tier,
                    new_tier=tier,
                    reason=admin_notes,
                    notes={"refund_request_id": str(request.id)},
                )
                commit_or_raise(session)
                return AdminActionResponse(message="Refund request rejected", details={"refund_request_id": str(request.id)})

            original: Invoice | None = session.get(Invoice, request.invoice_id) if request.invoice_id else None
            if original is None:
                original = self.ledger.latest_for_user(session, user_id, status="paid")
            if original is None:
                raise BusinessRuleError("user has no paid invoice to refund", code="original_invoice_not_found")

            self.ledger.transition_refund_request(request, "approved")
            refund_invoice, _ = self.ledger.record_refund(
                session,
                original,
                request.amount,
                source_type="refund_request",
                source_id=str(request.id),
                detail=admin_notes,
            )
            request.invoice_id = original.id
            self.ledger.transition_refund_request(request, "processed")
            record_change(
                session,
                ctx,
                user_id,
                "refund",
                previous_tier=tier,
                new_tier=tier,
                reason=admin_notes,
                notes={
                    "refund_request_id": str(request.id),
                    "invoice_number": original.invoice_number,
                    "refund_invoice_number": refund_invoice.invoice_number,
                    "amount": str(money(request.amount)),
                },
            )
            commit_or_raise(session)

            details: dict[str, Any] = {
                "refund_request_id": str(request.id),
                "invoice_number": original.invoice_number,
                "refund_invoice_number": refund_invoice.invoice_number,
            }
            if refund_externally:
                customer_id = subscription.external_customer_id if subscription is not None else None
                if not customer_id:
                    details["external_refund"] = {"status": "skipped", "reason": "no processor customer"}
                else:
                    details["external_refund"] = self._refund_against_latest_charge(
                        session,
                        processor,
                        user_id=user_id,
                        customer_id=customer_id,
                        amount=money(request.amount),
                        currency=request.currency,
                        metadata={"userId": user_id, "refundRequestId": str(request.id)},
                        match_amount=True,
                        refund_request=request,
                        refund_invoice=refund_invoice,
                    )
            return AdminActionResponse(message="Refund request approved and processed", details=details)

        return self._audited(session, ctx, user_id, "refund", operation, {"refund_request_id": str(request_id)})

    def _refund_against_latest_charge(
        self,
        session: Session,
        processor: PaymentProcessor,
        *,
        user_id: str,
        customer_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        match_amount: bool,
        refund_request: RefundRequest | None = None,
        refund_invoice: Invoice | None = None,
    ) -> dict[str, Any]:
        """Best-effort processor refund; the local ledger stands whatever happens here."""

        try:
            charges = processor.list_charges(customer_id, limit=10)
            charge = self._pick_charge(charges, amount, currency, match_amount=match_amount)
            if charge is None:
                raise BusinessRuleError("no refundable processor charge matches", code="charge_not_found")
            refund = processor.create_refund(charge_id=charge.id, amount_cents=_to_cents(amount), metadata=metadata)
        except (ExternalServiceError, BusinessRuleError) as exc:
            record_reconciliation_issue(
                session,
                user_id=user_id,
                operation="admin_external_refund",
                external_reference=customer_id,
                detail=f"processor refund of {money(amount)} {currency} failed: {exc.message}",
                commit=True,
            )
            return {"status": "failed", "error": exc.code, "amount": str(money(amount))}

        if refund_request is not None:
            refund_request.external_refund_id = refund.id
        if refund_invoice is not None:
            refund_invoice.external_charge_id = charge.id
        if refund_request is not None or refund_invoice is not None:
            session.commit()
        return {"status": refund.status, "refund_id": refund.id, "charge_id": charge.id, "amount": str(money(amount))}

    @staticmethod
    def _pick_charge(
        charges: list[ProcessorCharge],
        amount: Decimal,
        currency: str,
        *,
        match_amount: bool,
    ) -> ProcessorCharge | None:
        candidates = [
            charge
            for charge in charges
            if charge.paid and not charge.refunded and charge.currency.upper() == currency.upper() and charge.amount >= amount
        ]
        if match_amount:
            exact = [charge for charge in candidates if money(charge.amount) == money(amount)]
            if exact:
                return exact[0]
        return candidates[0] if candidates else None

    def admin_add_trial(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        trial_days: int,
        *,
        notes: str | None = None,
    ) -> AdminActionResponse:
        def operation() -> AdminActionResponse:
            if trial_days <= 0:
                raise ValidationError("trial_days must be positive", code="invalid_trial_days")
            subscription = self.store.load_for_update(session, ctx, user_id)
            now = utcnow()
            previous_tier = subscription.tier
            current = subscription.expires_at
            base = current if current is not None and current > now else now
            subscription.expires_at = base + timedelta(days=trial_days)
            if subscription.tier == FREE_TIER:
                subscription.tier = "tier_1"
            subscription.status = "trial"
            self.store.grace_manager.clear(subscription)
            record_change(
                session,
                ctx,
                user_id,
                "admin_trial_added",
                previous_tier=previous_tier,
                new_tier=subscription.tier,
                reason=notes,
                notes={"trial_days": trial_days, "expires_at": subscription.expires_at.isoformat()},
            )
            commit_or_raise(session)
            return AdminActionResponse(
                message=f"Added {trial_days} trial days",
                details={"tier": subscription.tier, "expires_at": subscription.expires_at.isoformat()},
            )

        return self._audited(session, ctx, user_id, "admin_trial_added", operation, {"trial_days": trial_days})

    def admin_cancel_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        processor: PaymentProcessor,
        *,
        cancel_externally: bool = True,
        immediate: bool = True,
        notes: str | None = None,
    ) -> AdminActionResponse:
        def operation() -> AdminActionResponse:
            subscription = self.store.load_for_update(session, ctx, user_id)
            if subscription.tier == FREE_TIER and subscription.status in {"cancelled", "expired"}:
                raise BusinessRuleError("subscription is already cancelled", code="already_cancelled")

            external_id = subscription.external_subscription_id
            cancelled_external_id = None
            if cancel_externally and subscription.is_paid_subscription and external_id:
                processor.cancel_subscription(external_id, at_period_end=not immediate)
                cancelled_external_id = external_id
            elif external_id:
                logger.warning(
                    "admin.processor_subscription_left_active",
                    extra={"user_id": user_id, "external_reference": external_id},
                )

            previous_tier = subscription.tier
            updated = self.store.apply_tier_change(
                session,
                ctx,
                user_id,
                FREE_TIER,
                reset_billing=True,
                reason=notes or "cancelled by admin",
                notes={"cancelled_external_subscription_id": cancelled_external_id, "immediate": immediate},
                change_type="admin_cancellation",
                commit=False,
            )
            updated.status = "cancelled"
            self._commit(session, user_id, "admin_cancel_subscription", cancelled_external_id)
            return AdminActionResponse(
                message="Subscription cancelled",
                details={
                    "previous_tier": previous_tier,
                    "cancelled_external_subscription_id": cancelled_external_id,
                    "grace_period_end": updated.grace_period_end.isoformat() if updated.grace_period_end else None,
                },
            )

        return self._audited(session, ctx, user_id, "admin_cancellation", operation)

    def admin_extend_grace_period(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        additional_days: int,
        *,
        notes: str | None = None,
    ) -> AdminActionResponse:
        def operation() -> AdminActionResponse:
            subscription = self.store.grace_manager.extend_grace_period(
                session, ctx, user_id, additional_days, reason=notes
            )
            end = subscription.grace_period_end
            return AdminActionResponse(
                message=f"Grace period extended by {additional_days} days",
                details={"grace_period_end": end.isoformat() if end else None, "days_remaining": days_remaining(end)},
            )

        return self._audited(
            session, ctx, user_id, "grace_period_extended", operation, {"additional_days": additional_days}
        )

    def admin_cancel_grace_period(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        *,
        notes: str | None = None,
    ) -> AdminActionResponse:
        def operation() -> AdminActionResponse:
            subscription = self.store.grace_manager.cancel_grace_period(session, ctx, user_id, reason=notes)
            return AdminActionResponse(message="Grace period cancelled", details={"tier": subscription.tier})

        return self._audited(session, ctx, user_id, "grace_period_cancelled", operation)

    def list_reconciliation_issues(self, session: Session, *, resolved: bool | None = False) -> list[ReconciliationIssueRead]:
        stmt = select(ReconciliationIssue)
        if resolved is not None:
            stmt = stmt.where(ReconciliationIssue.resolved.is_(resolved))
        rows = session.scalars(stmt.order_by(ReconciliationIssue.created_at.desc())).all()
        return [ReconciliationIssueRead.model_validate(row) for row in rows]

    def resolve_reconciliation_issue(self, session: Session, ctx: AuthContext, issue_id: uuid.UUID) -> ReconciliationIssueRead:
        issue = session.get(ReconciliationIssue, issue_id)
        if issue is None:
            raise NotFoundError("reconciliation issue not found", code="reconciliation_issue_not_found")
        issue.resolved = True
        session.commit()
        session.refresh(issue)
        logger.info("reconciliation.issue_resolved", extra={"actor_id": ctx.actor_id, "operation": issue.operation})
        return ReconciliationIssueRead.model_validate(issue)

    @staticmethod
    def _commit(session: Session, user_id: str, operation: str, external_reference: str | None) -> None:
        if external_reference is None:
            commit_or_raise(session)
            return
        commit_after_processor(
            session,
            user_id=user_id,
            operation=operation,
            external_reference=external_reference,
            detail=f"{operation} succeeded at the processor but the local change was not saved",
        )


admin_billing_service = AdminBillingService()
