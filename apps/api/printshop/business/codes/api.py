from __future__ import annotations

import uuid
from typing import Literal

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from printshop.business.codes.schemas import CodeRead, CreatorCodeCreate, PromoCodeCreate, RedeemRequest, RedeemResponse
from printshop.business.codes.service import RedemptionError, code_redemption_service
from printshop.core.auth import AuthUser
from printshop.core.database import get_db
from printshop.core.rbac import require_admin
from printshop.integrations.processor import PaymentProcessor, get_payment_processor
from printshop.platform.security.context import AuthContext
from printshop.platform.security.dependencies import get_auth_context


router = APIRouter(prefix="/codes", tags=["codes"])
admin_router = APIRouter(prefix="/admin/billing/codes", tags=["admin-billing"])


@router.post("/redeem", response_model=RedeemResponse)
def redeem_code(
    payload: RedeemRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_auth_context),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> RedeemResponse:
    try:
        result = code_redemption_service.redeem(db, ctx, ctx.user_id, payload.code, processor)
    except RedemptionError as exc:
        return RedeemResponse(success=False, message=exc.message, error=exc.code)
    return RedeemResponse(
        success=True,
        message=result.message,
        code_type=result.code_type,  # type: ignore[arg-type]
        tier=result.tier,
        trial_days=result.trial_days,
        discount_percentage=result.discount_percentage,
    )


@admin_router.get("", response_model=list[CodeRead])
def list_codes(
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin()),
) -> list[CodeRead]:
    return code_redemption_service.list_codes(db, active_only=active_only)


@admin_router.post("/promo", response_model=CodeRead, status_code=status.HTTP_201_CREATED)
def create_promo_code(
    payload: PromoCodeCreate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin()),
    ctx: AuthContext = Depends(get_auth_context),
) -> CodeRead:
    return code_redemption_service.create_promo_code(db, ctx, payload)


@admin_router.post("/creator", response_model=CodeRead, status_code=status.HTTP_201_CREATED)
def create_creator_code(
    payload: CreatorCodeCreate,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin()),
    ctx: AuthContext = Depends(get_auth_context),
) -> CodeRead:
    return code_redemption_service.create_creator_code(db, ctx, payload)


@admin_router.post("/{code_type}/{code_id}/deactivate", response_model=CodeRead)
def deactivate_code(
    code_type: Literal["promo", "creator"],
    code_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(require_admin()),
    ctx: AuthContext = Depends(get_auth_context),
) -> CodeRead:
    return code_redemption_service.deactivate_code(db, ctx, code_type, code_id)
