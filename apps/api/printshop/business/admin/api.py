from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from printshop.business.admin.schemas import (
    AdminActionResponse,
    AdminBillingPeriodChangeRequest,
    AdminCancelSubscriptionRequest,
    AdminGraceExtendRequest,
    AdminRefundDecisionRequest,
    AdminTierChangeRequest,
    AdminTrialRequest,
    AdminUserRequest,
    ReconciliationIssueRead,
)
from printshop.business.admin.service import admin_billing_service
from printshop.business.entitlements.schemas import SubscriptionChangeRead, SubscriptionRead
from printshop.business.entitlements.service import entitlement_store, to_subscription_read
from printshop.business.invoices.schemas import InvoiceRead, RefundRequestRead
from printshop.business.invoices.service import invoice_ledger
from printshop.core.database import get_db
from printshop.core.rbac import require_admin
from printshop.integrations.processor import PaymentProcessor, get_payment_processor
from printshop.platform.security.context import AuthContext
from printshop.platform.security.dependencies import get_auth_context


router = APIRouter(prefix="/admin/billing", tags=["admin-billing"], dependencies=[Depends(require_admin())])


@router.get("/users/{user_id}/subscription", response_model=SubscriptionRead)
def get_user_subscription(
    user_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> SubscriptionRead:
    return to_subscription_read(entitlement_store.get_subscription(db, ctx, user_id))


@router.get("/users/{user_id}/changes", response_model=list[SubscriptionChangeRead])
def list_user_changes(
    user_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[SubscriptionChangeRead]:
    return entitlement_store.list_changes(db, ctx, user_id)


@router.get("/users/{user_id}/invoices", response_model=list[InvoiceRead])
def list_user_invoices(
    user_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[InvoiceRead]:
    return invoice_ledger.list_invoices(db, ctx, user_id=user_id)


@router.post("/change-tier", response_model=AdminActionResponse)
def change_tier(
    payload: AdminTierChangeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> AdminActionResponse:
    return admin_billing_service.admin_change_tier(
        db, ctx, payload.user_id, payload.new_tier, processor, notes=payload.notes
    )


@router.post("/change-billing-period", response_model=AdminActionResponse)
def change_billing_period(
    payload: AdminBillingPeriodChangeRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> AdminActionResponse:
    return admin_billing_service.admin_change_billing_period(
        db, ctx, payload.user_id, payload.new_period, processor, notes=payload.notes
    )


@router.post("/add-trial", response_model=AdminActionResponse)
def add_trial(
    payload: AdminTrialRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AdminActionResponse:
    return admin_billing_service.admin_add_trial(db, ctx, payload.user_id, payload.trial_days, notes=payload.notes)


@router.post("/cancel-subscription", response_model=AdminActionResponse)
def cancel_subscription(
    payload: AdminCancelSubscriptionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> AdminActionResponse:
    return admin_billing_service.admin_cancel_subscription(
        db,
        ctx,
        payload.user_id,
        processor,
        cancel_externally=payload.cancel_externally,
        immediate=payload.immediate,
        notes=payload.notes,
    )


@router.post("/grace-period/extend", response_model=AdminActionResponse)
def extend_grace_period(
    payload: AdminGraceExtendRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AdminActionResponse:
    return admin_billing_service.admin_extend_grace_period(
        db, ctx, payload.user_id, payload.additional_days, notes=payload.notes
    )


@router.post("/grace-period/cancel", response_model=AdminActionResponse)
def cancel_grace_period(
    payload: AdminUserRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> AdminActionResponse:
    return admin_billing_service.admin_cancel_grace_period(db, ctx, payload.user_id, notes=payload.notes)


@router.get("/refund-requests", response_model=list[RefundRequestRead])
def list_refund_requests(
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> list[RefundRequestRead]:
    return invoice_ledger.list_refund_requests(db, ctx, status=status)


@router.post("/refund-requests/process", response_model=AdminActionResponse)
def process_refund_request(
    payload: AdminRefundDecisionRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> AdminActionResponse:
    return admin_billing_service.admin_process_refund_request(
        db,
        ctx,
        payload.request_id,
        payload.action,
        processor,
        admin_notes=payload.admin_notes,
        refund_externally=payload.refund_externally,
    )


@router.get("/reconciliation-issues", response_model=list[ReconciliationIssueRead])
def list_reconciliation_issues(
    resolved: bool | None = Query(default=False),
    db: Session = Depends(get_db),
) -> list[ReconciliationIssueRead]:
    return admin_billing_service.list_reconciliation_issues(db, resolved=resolved)


@router.post("/reconciliation-issues/{issue_id}/resolve", response_model=ReconciliationIssueRead)
def resolve_reconciliation_issue(
    issue_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
) -> ReconciliationIssueRead:
    return admin_billing_service.resolve_reconciliation_issue(db, ctx, issue_id)
