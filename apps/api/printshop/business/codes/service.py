from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from printshop.business.codes.models import CodeRedemption, CreatorCode, PromoCode
from printshop.business.codes.schemas import CodeRead, CreatorCodeCreate, PromoCodeCreate
from printshop.business.entitlements.changelog import record_change
from printshop.business.entitlements.models import UserSubscription
from printshop.business.entitlements.service import EntitlementStore, entitlement_store
from printshop.business.entitlements.tiers import FREE_TIER
from printshop.business.payments.reconciliation import commit_after_processor, record_reconciliation_issue
from printshop.core.database import commit_or_raise, utcnow
from printshop.core.errors import BusinessRuleError, ConflictError, ExternalServiceError, NotFoundError, ValidationError
from printshop.events import publish_on_commit
from printshop.integrations.processor import PaymentProcessor
from printshop.metrics import observe_code_redemption
from printshop.platform.security.context import AuthContext


logger = logging.getLogger("printshop.codes")

CodeRow = PromoCode | CreatorCode


class RedemptionError(BusinessRuleError):
    code = "redemption_failed"
    user_message = "This code cannot be redeemed"

    def __init__(self, message: str | None = None, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(message or self.user_message, **kwargs)


class InvalidCodeError(RedemptionError):
    code = "invalid_code"
    user_message = "Invalid code"


class AlreadyRedeemedError(RedemptionError):
    code = "already_redeemed"
    user_message = "You have already redeemed this code"


class ExpiredCodeError(RedemptionError):
    code = "code_expired"
    user_message = "This code has expired"


class ExhaustedUsesError(RedemptionError):
    code = "code_exhausted"
    user_message = "This code has reached its usage limit"


@dataclass(slots=True)
class RedemptionResult:
    code_type: str
    tier: str
    message: str
    trial_days: int | None = None
    discount_percentage: int | None = None
    processor_cancelled: bool = False


def normalize_code(raw_code: str) -> str:
    return (raw_code or "").strip().upper()


def _rejection(code: CodeRow | None, now: datetime) -> type[RedemptionError] | None:
    if code is None or not code.is_active:
        return InvalidCodeError
    if code.expires_at is not None and code.expires_at <= now:
        return ExpiredCodeError
    if code.max_uses is not None and code.current_uses >= code.max_uses:
        return ExhaustedUsesError
    return None


def _code_type(code: CodeRow) -> str:
    return "creator" if isinstance(code, CreatorCode) else "promo"


@dataclass(slots=True)
class CodeRedemptionService:
    store: EntitlementStore = field(default_factory=lambda: entitlement_store)

    def resolve_code(self, session: Session, normalized: str, now: datetime) -> CodeRow:
        promo = session.scalar(select(PromoCode).where(PromoCode.code == normalized))
        promo_rejection = _rejection(promo, now)
        if promo is not None and promo_rejection is None:
            return promo

        creator = session.scalar(select(CreatorCode).where(CreatorCode.code == normalized))
        creator_rejection = _rejection(creator, now)
        if creator is not None and creator_rejection is None:
            return creator

        for rejection in (promo_rejection, creator_rejection):
            if rejection is not None and rejection is not InvalidCodeError:
                raise rejection()
        raise InvalidCodeError()

    def redeem(
        self,
        session: Session,
        ctx: AuthContext,
        user_id: str,
        raw_code: str,
        processor: PaymentProcessor,
    ) -> RedemptionResult:
        normalized = normalize_code(raw_code)
        if not normalized:
            raise ValidationError("code is required", code="code_required")

        now = utcnow()
        try:
            code = self.resolve_code(session, normalized, now)
        except RedemptionError as exc:
            observe_code_redemption("unknown", exc.code)
            logger.info("redemption.rejected", extra={"user_id": user_id, "outcome": exc.code})
            raise
        code_type = _code_type(code)

        try:
            subscription = self.store.load_for_update(session, ctx, user_id)
        except NotFoundError:
            self.store.provision_subscription(session, ctx, user_id)
            subscription = self.store.load_for_update(session, ctx, user_id)

        existing = session.scalar(
            select(CodeRedemption.id).where(CodeRedemption.user_id == user_id, CodeRedemption.code_id == code.id)
        )
        if existing is not None:
            self._reject(session, code_type, user_id, AlreadyRedeemedError())

        trial_days = code.trial_days if isinstance(code, CreatorCode) and code.trial_days > 0 else None
        discount = code.discount_percentage if isinstance(code, CreatorCode) and code.discount_percentage > 0 else None
        session.add(
            CodeRedemption(
                user_id=user_id,
                code_type=code_type,
                code_id=code.id,
                tier_granted=code.tier_granted,
                trial_days_granted=trial_days,
                discount_percentage=discount,
                redeemed_at=now,
            )
        )
        try:
            session.flush()
        except IntegrityError:
            self._reject(session, code_type, user_id, AlreadyRedeemedError())

        model = type(code)
        counted = session.execute(
            update(model)
            .where(model.id == code.id, or_(model.max_uses.is_(None), model.current_uses < model.max_uses))
            .values(current_uses=model.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        if counted.rowcount == 0:
            self._reject(session, code_type, user_id, ExhaustedUsesError())

        processor_cancelled = False
        external_id = subscription.external_subscription_id
        if subscription.is_paid_subscription and external_id:
            try:
                processor.cancel_subscription(external_id)
            except ExternalServiceError as exc:
                logger.warning(
                    "redemption.processor_cancel_failed",
                    extra={"user_id": user_id, "external_reference": external_id, "error": exc.message},
                )
                record_reconciliation_issue(
                    session,
                    user_id=user_id,
                    operation="redemption_cancel_subscription",
                    external_reference=external_id,
                    detail=f"code {normalized} applied but the paid subscription could not be cancelled: {exc.message}",
                )
            else:
                processor_cancelled = True
                self.store.unlink_external_subscription(
                    session, ctx, user_id, reason=f"{code_type} code {normalized} replaced paid billing", commit=False
                )

        previous_tier = subscription.tier
        new_tier = self._apply_grant(subscription, code, trial_days, now)
        record_change(
            session,
            ctx,
            user_id,
            f"{code_type}_code_applied",
            previous_tier=previous_tier,
            new_tier=new_tier,
            reason=f"redeemed {code_type} code",
            notes={
                "code": normalized,
                "code_id": str(code.id),
                "trial_days": trial_days,
                "discount_percentage": discount,
                "processor_cancelled": processor_cancelled,
            },
        )
        publish_on_commit(
            session,
            {
                "event_type": "code.redeemed",
                "user_id": user_id,
                "code_type": code_type,
                "previous_tier": previous_tier,
                "tier": new_tier,
            },
        )

        try:
            if processor_cancelled:
                commit_after_processor(
                    session,
                    user_id=user_id,
                    operation="redemption_cancel_subscription",
                    external_reference=external_id,
                    detail="paid subscription cancelled at the processor but the redemption was not saved",
                )
            else:
                commit_or_raise(session)
        except IntegrityError:
            # Lost the race against a concurrent redemption of the same code.
            self._reject(session, code_type, user_id, AlreadyRedeemedError())

        observe_code_redemption(code_type, "applied")
        logger.info(
            "redemption.applied",
            extra={"user_id": user_id, "code_type": code_type, "previous_tier": previous_tier, "tier": new_tier},
        )
        if trial_days:
            message = f"Code applied: {trial_days} trial days on {new_tier}"
        else:
            message = f"Code applied: {new_tier} unlocked"
        return RedemptionResult(
            code_type=code_type,
            tier=new_tier,
            message=message,
            trial_days=trial_days,
            discount_percentage=discount,
            processor_cancelled=processor_cancelled,
        )

    def _apply_grant(
        self,
        subscription: UserSubscription,
        code: CodeRow,
        trial_days: int | None,
        now: datetime,
    ) -> str:
        if isinstance(code, CreatorCode):
            # Creator codes never lower a tier: tier_1 codes only lift free users.
            if code.tier_granted == "tier_2" or subscription.tier == FREE_TIER:
                subscription.tier = code.tier_granted
        else:
            subscription.tier = code.tier_granted

        if trial_days:
            current = subscription.expires_at
            base = current if current is not None and current > now else now
            subscription.expires_at = base + timedelta(days=trial_days)
            subscription.status = "trial"
        elif isinstance(code, CreatorCode):
            # A discount-only creator code keeps the current expiry; a running trial still lapses.
            subscription.status = "trial" if subscription.status == "trial" and subscription.expires_at is not None else "active"
        else:
            subscription.status = "active"
            subscription.expires_at = None

        if subscription.tier != FREE_TIER and (subscription.grace_period_end is not None or subscription.is_read_only):
            self.store.grace_manager.clear(subscription)
        return subscription.tier

    @staticmethod
    def _reject(session: Session, code_type: str, user_id: str, error: RedemptionError) -> None:
        session.rollback()
        observe_code_redemption(code_type, error.code)
        logger.info("redemption.rejected", extra={"user_id": user_id, "code_type": code_type, "outcome": error.code})
        raise error

    def create_promo_code(self, session: Session, ctx: AuthContext, payload: PromoCodeCreate) -> CodeRead:
        self._ensure_code_free(session, payload.code)
        row = PromoCode(
            code=payload.code,
            tier_granted=payload.tier_granted,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
            description=payload.description,
            created_by=ctx.actor_id,
        )
        return self._save_code(session, ctx, row)

    def create_creator_code(self, session: Session, ctx: AuthContext, payload: CreatorCodeCreate) -> CodeRead:
        self._ensure_code_free(session, payload.code)
        row = CreatorCode(
            code=payload.code,
            creator_name=payload.creator_name,
            tier_granted=payload.tier_granted,
            trial_days=payload.trial_days,
            discount_percentage=payload.discount_percentage,
            max_uses=payload.max_uses,
            expires_at=payload.expires_at,
            description=payload.description,
            created_by=ctx.actor_id,
        )
        return self._save_code(session, ctx, row)

    def list_codes(self, session: Session, *, active_only: bool = False) -> list[CodeRead]:
        rows: list[CodeRow] = []
        for model in (PromoCode, CreatorCode):
            stmt = select(model)
            if active_only:
                stmt = stmt.where(model.is_active.is_(True))
            rows.extend(session.scalars(stmt).all())
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return [to_code_read(row) for row in rows]

    def deactivate_code(self, session: Session, ctx: AuthContext, code_type: str, code_id: uuid.UUID) -> CodeRead:
        model = CreatorCode if code_type == "creator" else PromoCode
        row = session.get(model, code_id)
        if row is None:
            raise NotFoundError("code not found", code="code_not_found")
        row.is_active = False
        session.commit()
        session.refresh(row)
        logger.info("code.deactivated", extra={"actor_id": ctx.actor_id, "code_type": code_type})
        return to_code_read(row)

    @staticmethod
    def _ensure_code_free(session: Session, normalized: str) -> None:
        for model in (PromoCode, CreatorCode):
            if session.scalar(select(model.id).where(model.code == normalized)) is not None:
                raise ConflictError(f"code {normalized} already exists", code="code_exists")

    @staticmethod
    def _save_code(session: Session, ctx: AuthContext, row: CodeRow) -> CodeRead:
        session.add(row)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f"code {row.code} already exists", code="code_exists") from exc
        session.refresh(row)
        logger.info("code.created", extra={"actor_id": ctx.actor_id, "code_type": _code_type(row), "tier": row.tier_granted})
        return to_code_read(row)


def to_code_read(row: CodeRow) -> CodeRead:
    payload = {
        "id": row.id,
        "code_type": _code_type(row),
        "code": row.code,
        "tier_granted": row.tier_granted,
        "max_uses": row.max_uses,
        "current_uses": row.current_uses,
        "is_active": row.is_active,
        "expires_at": row.expires_at,
        "description": row.description,
        "created_at": row.created_at,
    }
    if isinstance(row, CreatorCode):
        payload.update(
            creator_name=row.creator_name,
            trial_days=row.trial_days,
            discount_percentage=row.discount_percentage,
        )
    return CodeRead.model_validate(payload)


code_redemption_service = CodeRedemptionService()
