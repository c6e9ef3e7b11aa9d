from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from printshop.business.invoices.schemas import InvoiceRead, RefundRequestCreate, RefundRequestRead
from printshop.business.invoices.service import invoice_ledger
from printshop.core.database import get_db
from printshop.platform.security.context import AuthContext
from printshop.platform.security.dependencies import get_auth_context


router = APIRouter(tags=["invoices"])


@router.get("/invoices", response_model=list[InvoiceRead])
def list_invoices(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[InvoiceRead]:
    return invoice_ledger.list_invoices(db, ctx, user_id=ctx.user_id)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> InvoiceRead:
    return InvoiceRead.model_validate(invoice_ledger.get_invoice(db, ctx, invoice_id))


@router.post("/refund-requests", response_model=RefundRequestRead, status_code=status.HTTP_201_CREATED)
def create_refund_request(
    payload: RefundRequestCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> RefundRequestRead:
    return invoice_ledger.create_refund_request(db, ctx, payload)


@router.get("/refund-requests", response_model=list[RefundRequestRead])
def list_refund_requests(
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[RefundRequestRead]:
    return invoice_ledger.list_refund_requests(db, ctx)
