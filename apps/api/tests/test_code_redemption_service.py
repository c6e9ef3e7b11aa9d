from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printshop import events
from printshop.business.codes.models import CodeRedemption, CreatorCode, PromoCode
from printshop.business.codes.schemas import CreatorCodeCreate, PromoCodeCreate
from printshop.business.codes.service import (
    AlreadyRedeemedError,
    ExhaustedUsesError,
    ExpiredCodeError,
    InvalidCodeError,
    code_redemption_service,
)
from printshop.business.entitlements.models import SubscriptionChangeLog, UserSubscription
from printshop.business.entitlements.service import entitlement_store
from printshop.business.payments.models import ReconciliationIssue
from printshop.core.database import Base, utcnow
from printshop.core.errors import ConflictError, ExternalServiceError, ValidationError
from printshop.integrations.processor import ProcessorSubscription
from printshop.platform.security.context import AuthContext


class StubProcessor:
    def __init__(self, *, fail_cancel: bool = False) -> None:
        self.fail_cancel = fail_cancel
        self.cancelled: list[str] = []

    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> ProcessorSubscription:
        if self.fail_cancel:
            raise ExternalServiceError("payment processor request failed", operation="cancel_subscription")
        self.cancelled.append(subscription_id)
        return ProcessorSubscription(id=subscription_id, customer_id="cus_1", status="canceled")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _ctx(user_id: str = "user-1") -> AuthContext:
    return AuthContext(user_id=user_id, correlation_id="corr-codes")


def _admin() -> AuthContext:
    return AuthContext(user_id="admin-1", is_super_admin=True, roles=["admin"])


def _promo(session: Session, code: str = "LAUNCH", **overrides) -> PromoCode:  # type: ignore[no-untyped-def]
    payload = {"code": code, "tier_granted": "tier_2", **overrides}
    created = code_redemption_service.create_promo_code(session, _admin(), PromoCodeCreate(**payload))
    return session.get(PromoCode, created.id)  # type: ignore[return-value]


def _creator(session: Session, code: str = "ALICE", **overrides) -> CreatorCode:  # type: ignore[no-untyped-def]
    payload = {"code": code, "tier_granted": "tier_2", "creator_name": "Alice", "trial_days": 10, **overrides}
    created = code_redemption_service.create_creator_code(session, _admin(), CreatorCodeCreate(**payload))
    return session.get(CreatorCode, created.id)  # type: ignore[return-value]


def _subscription(session: Session, user_id: str = "user-1") -> UserSubscription:
    row = session.scalar(select(UserSubscription).where(UserSubscription.user_id == user_id))
    assert row is not None
    return row


def test_promo_code_redeems_once_and_counts_one_use(db_session: Session) -> None:
    promo = _promo(db_session, max_uses=5)

    result = code_redemption_service.redeem(db_session, _ctx(), "user-1", "  launch ", StubProcessor())

    assert result.code_type == "promo"
    assert result.tier == "tier_2"
    db_session.refresh(promo)
    assert promo.current_uses == 1
    subscription = _subscription(db_session)
    assert subscription.tier == "tier_2"
    assert subscription.status == "active"
    assert subscription.expires_at is None

    with pytest.raises(AlreadyRedeemedError):
        code_redemption_service.redeem(db_session, _ctx(), "user-1", "LAUNCH", StubProcessor())

    db_session.refresh(promo)
    assert promo.current_uses == 1
    redemptions = db_session.scalar(select(func.count()).select_from(CodeRedemption))
    assert redemptions == 1

    applied = [item for item in events.published_events if item["event_type"] == "code.redeemed"]
    assert len(applied) == 1
    assert applied[0]["tier"] == "tier_2"
    change = db_session.scalar(
        select(SubscriptionChangeLog).where(SubscriptionChangeLog.change_type == "promo_code_applied")
    )
    assert change is not None
    assert change.correlation_id == "corr-codes"
    assert change.actor_id == "user-1"


def test_exhausted_expired_and_inactive_codes_are_rejected(db_session: Session) -> None:
    _promo(db_session, "SINGLE", max_uses=1)
    _promo(db_session, "OLD", expires_at=utcnow() - timedelta(days=1))
    code_redemption_service.redeem(db_session, _ctx("user-1"), "user-1", "SINGLE", StubProcessor())

    with pytest.raises(ExhaustedUsesError):
        code_redemption_service.redeem(db_session, _ctx("user-2"), "user-2", "SINGLE", StubProcessor())
    with pytest.raises(ExpiredCodeError):
        code_redemption_service.redeem(db_session, _ctx("user-2"), "user-2", "OLD", StubProcessor())
    with pytest.raises(InvalidCodeError):
        code_redemption_service.redeem(db_session, _ctx("user-2"), "user-2", "MISSING", StubProcessor())
    with pytest.raises(ValidationError):
        code_redemption_service.redeem(db_session, _ctx("user-2"), "user-2", "   ", StubProcessor())

    single = db_session.scalar(select(PromoCode).where(PromoCode.code == "SINGLE"))
    assert single is not None
    code_redemption_service.deactivate_code(db_session, _admin(), "promo", single.id)
    with pytest.raises(InvalidCodeError):
        code_redemption_service.redeem(db_session, _ctx("user-3"), "user-3", "SINGLE", StubProcessor())


def test_creator_trial_days_stack_on_a_future_expiry(db_session: Session) -> None:
    _creator(db_session, trial_days=10)
    entitlement_store.provision_subscription(db_session, _ctx(), "user-1")
    subscription = _subscription(db_session)
    existing_expiry = utcnow() + timedelta(days=5)
    subscription.tier = "tier_1"
    subscription.status = "trial"
    subscription.expires_at = existing_expiry
    db_session.commit()

    result = code_redemption_service.redeem(db_session, _ctx(), "user-1", "ALICE", StubProcessor())

    subscription = _subscription(db_session)
    assert result.trial_days == 10
    assert subscription.tier == "tier_2"
    assert subscription.status == "trial"
    assert subscription.expires_at == existing_expiry + timedelta(days=10)


def test_creator_trial_starts_from_now_when_expiry_has_passed(db_session: Session) -> None:
    _creator(db_session, trial_days=10)
    entitlement_store.provision_subscription(db_session, _ctx(), "user-1")
    subscription = _subscription(db_session)
    subscription.expires_at = utcnow() - timedelta(days=3)
    db_session.commit()

    before = utcnow()
    code_redemption_service.redeem(db_session, _ctx(), "user-1", "ALICE", StubProcessor())
    after = utcnow()

    expires_at = _subscription(db_session).expires_at
    assert expires_at is not None
    assert before + timedelta(days=10) <= expires_at <= after + timedelta(days=10)


def test_creator_code_never_lowers_a_higher_tier(db_session: Session) -> None:
    _creator(db_session, "BOB", tier_granted="tier_1", trial_days=0, discount_percentage=20)
    entitlement_store.provision_subscription(db_session, _ctx(), "user-1")
    subscription = _subscription(db_session)
    subscription.tier = "tier_2"
    db_session.commit()

    result = code_redemption_service.redeem(db_session, _ctx(), "user-1", "bob", StubProcessor())

    assert result.tier == "tier_2"
    assert result.discount_percentage == 20
    assert _subscription(db_session).tier == "tier_2"


def test_redeeming_over_paid_billing_cancels_processor_subscription(db_session: Session) -> None:
    _promo(db_session)
    entitlement_store.provision_subscription(db_session, _ctx(), "user-1")
    subscription = _subscription(db_session)
    subscription.tier = "tier_1"
    subscription.billing_period = "monthly"
    subscription.is_paid_subscription = True
    subscription.external_subscription_id = "sub_paid"
    subscription.external_customer_id = "cus_1"
    db_session.commit()
    processor = StubProcessor()

    result = code_redemption_service.redeem(db_session, _ctx(), "user-1", "LAUNCH", processor)

    assert processor.cancelled == ["sub_paid"]
    assert result.processor_cancelled is True
    subscription = _subscription(db_session)
    assert subscription.tier == "tier_2"
    assert subscription.is_paid_subscription is False
    assert subscription.external_subscription_id is None
    assert subscription.external_customer_id == "cus_1"
    change_types = set(db_session.scalars(select(SubscriptionChangeLog.change_type)).all())
    assert {"external_subscription_unlinked", "promo_code_applied"} <= change_types


def test_processor_cancel_failure_is_recorded_for_reconciliation(db_session: Session) -> None:
    _promo(db_session)
    entitlement_store.provision_subscription(db_session, _ctx(), "user-1")
    subscription = _subscription(db_session)
    subscription.tier = "tier_1"
    subscription.is_paid_subscription = True
    subscription.external_subscription_id = "sub_paid"
    db_session.commit()

    result = code_redemption_service.redeem(db_session, _ctx(), "user-1", "LAUNCH", StubProcessor(fail_cancel=True))

    assert result.processor_cancelled is False
    subscription = _subscription(db_session)
    assert subscription.tier == "tier_2"
    assert subscription.external_subscription_id == "sub_paid"
    issues = db_session.scalars(select(ReconciliationIssue)).all()
    assert len(issues) == 1
    assert issues[0].operation == "redemption_cancel_subscription"
    assert issues[0].external_reference == "sub_paid"


def test_code_names_are_unique_across_code_kinds(db_session: Session) -> None:
    _promo(db_session, "SHARED")

    with pytest.raises(ConflictError):
        _creator(db_session, "shared")

    listed = code_redemption_service.list_codes(db_session)
    assert [item.code for item in listed] == ["SHARED"]


def test_discount_only_creator_code_keeps_a_running_trial_expiry(db_session: Session) -> None:
    _creator(db_session, "DISC", trial_days=0, discount_percentage=20)
    entitlement_store.provision_subscription(db_session, _ctx(), "user-1")
    subscription = _subscription(db_session)
    trial_end = utcnow() + timedelta(days=5)
    subscription.tier = "tier_2"
    subscription.status = "trial"
    subscription.expires_at = trial_end
    db_session.commit()

    result = code_redemption_service.redeem(db_session, _ctx(), "user-1", "DISC", StubProcessor())

    subscription = _subscription(db_session)
    assert result.discount_percentage == 20
    assert result.trial_days is None
    assert subscription.tier == "tier_2"
    assert subscription.status == "trial"
    assert subscription.expires_at == trial_end


def test_concurrent_redemptions_of_one_code_commit_once(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'codes.db'}")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    setup = SessionLocal()
    promo_id = _promo(setup, "RACE", max_uses=5).id
    entitlement_store.provision_subscription(setup, _ctx(), "user-1")
    setup.close()

    winner_session = SessionLocal()
    loser_session = SessionLocal()
    winners = []

    # The competing redemption commits after the loser's duplicate check but before its insert.
    def redeem_in_between(session, flush_context, instances):  # type: ignore[no-untyped-def]
        if not winners:
            winners.append(code_redemption_service.redeem(winner_session, _ctx(), "user-1", "RACE", StubProcessor()))

    event.listen(loser_session, "before_flush", redeem_in_between)
    try:
        with pytest.raises(AlreadyRedeemedError):
            code_redemption_service.redeem(loser_session, _ctx(), "user-1", "race", StubProcessor())
    finally:
        event.remove(loser_session, "before_flush", redeem_in_between)
        winner_session.close()
        loser_session.close()

    assert len(winners) == 1
    assert winners[0].tier == "tier_2"

    check = SessionLocal()
    try:
        promo = check.get(PromoCode, promo_id)
        assert promo is not None
        assert promo.current_uses == 1
        assert check.scalar(select(func.count()).select_from(CodeRedemption)) == 1
        assert _subscription(check).tier == "tier_2"
    finally:
        check.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
