from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from printshop.business.payments.models import ReconciliationIssue
from printshop.context import get_correlation_id
from printshop.core.database import commit_or_raise
from printshop.core.errors import ConflictError
from printshop.metrics import observe_reconciliation_issue


logger = logging.getLogger("printshop.reconciliation")


def record_reconciliation_issue(
    session: Session,
    *,
    user_id: str,
    operation: str,
    detail: str,
    external_reference: str | None = None,
    commit: bool = False,
) -> ReconciliationIssue:
    """Persist a known divergence between the processor and the local store.

    With ``commit=True`` the row is written in its own transaction, which is
    what callers use after rolling back a failed local change.
    """

    issue = ReconciliationIssue(
        user_id=user_id,
        operation=operation,
        external_reference=external_reference,
        detail=detail[:2000],
        correlation_id=get_correlation_id(),
    )
    session.add(issue)
    if commit:
        session.commit()
    observe_reconciliation_issue(operation)
    logger.error(
        "reconciliation.issue_recorded",
        extra={"user_id": user_id, "operation": operation, "external_reference": external_reference, "error": detail},
    )
    return issue


def commit_after_processor(
    session: Session,
    *,
    user_id: str,
    operation: str,
    external_reference: str | None,
    detail: str,
) -> None:
    """Commit local changes that follow a processor call that already succeeded.

    If the local commit fails the processor and the store have diverged, so
    the divergence is recorded before the error propagates.
    """

    try:
        commit_or_raise(session)
    except (ConflictError, SQLAlchemyError):
        session.rollback()
        record_reconciliation_issue(
            session,
            user_id=user_id,
            operation=operation,
            external_reference=external_reference,
            detail=detail,
            commit=True,
        )
        raise
