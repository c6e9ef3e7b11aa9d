from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printshop.business.invoices.models import Invoice, RefundRequest
from printshop.business.invoices.repository import InvoiceRepository, RefundRequestRepository
from printshop.business.invoices.schemas import InvoiceRead, RefundRequestCreate, RefundRequestRead
from printshop.core.database import utcnow
from printshop.core.errors import BusinessRuleError, ConflictError, NotFoundError
from printshop.events import publish_on_commit
from printshop.platform.security.context import AuthContext


logger = logging.getLogger("printshop.invoices")

VALID_INVOICE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"paid", "failed"},
    "paid": {"refunded"},
    "refunded": set(),
    "failed": set(),
}

VALID_REFUND_REQUEST_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"approved", "rejected"},
    "approved": {"processed"},
    "rejected": set(),
    "processed": set(),
}

_CENT = Decimal("0.01")


def money(value: Decimal | int | float | str) -> Decimal:
    return Decimal(str(value)).quantize(_CENT)


def next_invoice_number(prefix: str = "INV", now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"{prefix}-{now:%Y%m%d}-{uuid.uuid4().hex[:10].upper()}"


@dataclass(slots=True)
class InvoiceLedger:
    """Append-only invoice ledger. Rows are inserted; only ``status`` moves afterwards."""

    invoice_repository: InvoiceRepository = InvoiceRepository()
    refund_request_repository: RefundRequestRepository = RefundRequestRepository()

    def find_by_source(self, session: Session, source_type: str, source_id: str) -> Invoice | None:
        return session.scalar(select(Invoice).where(Invoice.source_type == source_type, Invoice.source_id == source_id))

    def latest_for_user(self, session: Session, user_id: str, *, status: str) -> Invoice | None:
        return session.scalar(
            select(Invoice)
            .where(Invoice.user_id == user_id, Invoice.status == status, Invoice.refund_of_invoice_id.is_(None))
            .order_by(Invoice.issued_date.desc(), Invoice.created_at.desc())
            .limit(1)
        )

    def record_charge(
        self,
        session: Session,
        *,
        user_id: str,
        amount: Decimal,
        currency: str,
        status: str,
        tier: str | None,
        billing_period: str | None,
        source_type: str,
        source_id: str,
        notes: str | None = None,
        invoice_number: str | None = None,
        issued_at: datetime | None = None,
    ) -> tuple[Invoice, bool]:
        """Insert a charge row unless one already exists for the same processor object.

        Returns the invoice and whether it was created by this call.
        """

        existing = self.find_by_source(session, source_type, source_id)
        if existing is not None:
            return existing, False

        now = utcnow()
        number = invoice_number or next_invoice_number("INV", now)
        if session.scalar(select(Invoice.id).where(Invoice.invoice_number == number)) is not None:
            number = next_invoice_number("INV", now)

        invoice = Invoice(
            user_id=user_id,
            invoice_number=number,
            amount=money(amount),
            currency=currency.upper(),
            status=status,
            tier=tier,
            billing_period=billing_period,
            issued_date=issued_at or now,
            paid_date=now if status == "paid" else None,
            source_type=source_type,
            source_id=source_id,
            notes=notes,
        )
        session.add(invoice)
        session.flush()
        publish_on_commit(
            session,
            {
                "event_type": "invoice.recorded",
                "user_id": user_id,
                "invoice_number": invoice.invoice_number,
                "status": status,
                "amount": str(invoice.amount),
                "currency": invoice.currency,
            },
        )
        logger.info("invoice.recorded", extra={"user_id": user_id, "invoice_number": invoice.invoice_number, "status": status})
        return invoice, True

    def transition(self, invoice: Invoice, target: str) -> bool:
        if invoice.status == target:
            return False
        allowed = VALID_INVOICE_TRANSITIONS.get(invoice.status, set())
        if target not in allowed:
            raise ConflictError(
                f"invalid invoice transition {invoice.status} -> {target}",
                code="invalid_invoice_transition",
            )
        invoice.status = target
        if target == "paid":
            invoice.paid_date = utcnow()
        return True

    def find_refund_of(self, session: Session, original: Invoice, amount: Decimal) -> Invoice | None:
        negated = -money(amount)
        rows = session.scalars(select(Invoice).where(Invoice.refund_of_invoice_id == original.id)).all()
        return next((row for row in rows if money(row.amount) == negated), None)

    def refunded_against_charge(self, session: Session, charge_id: str) -> Decimal:
        rows = session.scalars(
            select(Invoice.amount).where(Invoice.external_charge_id == charge_id, Invoice.refund_of_invoice_id.is_not(None))
        ).all()
        return money(sum((abs(amount) for amount in rows), Decimal("0")))

    def record_refund(
        self,
        session: Session,
        original: Invoice,
        amount: Decimal,
        *,
        source_type: str,
        source_id: str,
        detail: str | None = None,
        charge_id: str | None = None,
    ) -> tuple[Invoice, bool]:
        """Mark ``original`` refunded and append its negated counterpart exactly once."""

        refund_amount = money(abs(amount))
        if refund_amount <= 0:
            raise BusinessRuleError("refund amount must be positive", code="invalid_refund_amount")
        if refund_amount > money(original.amount):
            raise BusinessRuleError("refund exceeds the original invoice amount", code="refund_exceeds_invoice")

        existing = self.find_refund_of(session, original, refund_amount) or self.find_by_source(session, source_type, source_id)
        if existing is not None:
            if original.status == "paid":
                self.transition(original, "refunded")
            return existing, False

        if original.status == "paid":
            self.transition(original, "refunded")
        elif original.status != "refunded":
            raise BusinessRuleError(
                f"invoice {original.invoice_number} is {original.status} and cannot be refunded",
                code="invoice_not_refundable",
            )

        now = utcnow()
        notes = f"Original invoice: {original.invoice_number}"
        if detail:
            notes = f"{notes}. {detail}"
        refund = Invoice(
            user_id=original.user_id,
            invoice_number=next_invoice_number("REF", now),
            amount=-refund_amount,
            currency=original.currency,
            status="refunded",
            tier=original.tier,
            billing_period=original.billing_period,
            issued_date=now,
            paid_date=now,
            source_type=source_type,
            source_id=source_id,
            external_charge_id=charge_id,
            refund_of_invoice_id=original.id,
            notes=notes,
        )
        session.add(refund)
        session.flush()
        publish_on_commit(
            session,
            {
                "event_type": "invoice.refunded",
                "user_id": original.user_id,
                "invoice_number": original.invoice_number,
                "refund_invoice_number": refund.invoice_number,
                "amount": str(refund.amount),
                "currency": refund.currency,
            },
        )
        logger.info(
            "invoice.refund_recorded",
            extra={"user_id": original.user_id, "invoice_number": refund.invoice_number, "external_reference": source_id},
        )
        return refund, True

    def list_invoices(self, session: Session, ctx: AuthContext, *, user_id: str | None = None) -> list[InvoiceRead]:
        stmt = select(Invoice)
        if user_id is not None:
            stmt = stmt.where(Invoice.user_id == user_id)
        stmt = self.invoice_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(Invoice.issued_date.desc(), Invoice.created_at.desc())).all()
        return [InvoiceRead.model_validate(row) for row in rows]

    def get_invoice(self, session: Session, ctx: AuthContext, invoice_id: uuid.UUID) -> Invoice:
        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("invoice not found", code="invoice_not_found")
        self.invoice_repository.validate_owner(invoice.user_id, ctx)
        return invoice

    def create_refund_request(self, session: Session, ctx: AuthContext, payload: RefundRequestCreate) -> RefundRequestRead:
        if payload.invoice_id is not None:
            invoice = self.get_invoice(session, ctx, payload.invoice_id)
            if invoice.status != "paid" or invoice.refund_of_invoice_id is not None:
                raise BusinessRuleError("only paid invoices can be refunded", code="invoice_not_refundable")
            if money(payload.amount) > money(invoice.amount):
                raise BusinessRuleError("refund exceeds the original invoice amount", code="refund_exceeds_invoice")

        request = RefundRequest(
            user_id=ctx.user_id,
            invoice_id=payload.invoice_id,
            amount=money(payload.amount),
            currency=payload.currency.upper(),
            reason=payload.reason,
            description=payload.description,
            status="pending",
        )
        session.add(request)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("refund request could not be recorded", code="refund_request_conflict") from exc
        session.refresh(request)
        return RefundRequestRead.model_validate(request)

    def list_refund_requests(
        self,
        session: Session,
        ctx: AuthContext,
        *,
        status: str | None = None,
    ) -> list[RefundRequestRead]:
        stmt = select(RefundRequest)
        if status is not None:
            stmt = stmt.where(RefundRequest.status == status)
        stmt = self.refund_request_repository.apply_scope_query(stmt, ctx)
        rows = session.scalars(stmt.order_by(RefundRequest.created_at.desc())).all()
        return [RefundRequestRead.model_validate(row) for row in rows]

    @staticmethod
    def transition_refund_request(request: RefundRequest, target: str) -> None:
        allowed = VALID_REFUND_REQUEST_TRANSITIONS.get(request.status, set())
        if target not in allowed:
            raise ConflictError(
                f"refund request is {request.status} and cannot become {target}",
                code="invalid_refund_request_transition",
            )
        request.status = target
        if target in {"processed", "rejected"}:
            request.processed_at = utcnow()


invoice_ledger = InvoiceLedger()
