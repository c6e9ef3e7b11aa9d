from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printshop import events
from printshop.core.auth import AuthUser, get_current_user
from printshop.core.config import get_settings
from printshop.core.database import Base, get_db
from printshop.integrations.processor import ProcessorSubscription, get_payment_processor
from printshop.main import app
from printshop.middleware.rate_limit import reset_rate_limiter


class NoopProcessor:
    def cancel_subscription(self, subscription_id: str, *, at_period_end: bool = False) -> ProcessorSubscription:
        return ProcessorSubscription(id=subscription_id, customer_id=None, status="canceled")


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def auth_state() -> dict[str, AuthUser]:
    return {"user": AuthUser(sub="admin-1", roles=["admin"])}


@pytest.fixture()
def client(db_session: Session, auth_state: dict[str, AuthUser]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return auth_state["user"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_payment_processor] = NoopProcessor

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _as_user(auth_state: dict[str, AuthUser], sub: str = "user-1") -> None:
    auth_state["user"] = AuthUser(sub=sub, roles=["user"])


def test_admin_creates_codes_and_users_cannot(client: TestClient, auth_state: dict[str, AuthUser]) -> None:
    promo = client.post("/admin/billing/codes/promo", json={"code": "launch", "tier_granted": "tier_2", "max_uses": 3})
    assert promo.status_code == 201
    assert promo.json()["code"] == "LAUNCH"
    assert promo.json()["code_type"] == "promo"

    creator = client.post(
        "/admin/billing/codes/creator",
        json={"code": "alice", "tier_granted": "tier_1", "creator_name": "Alice", "trial_days": 14},
    )
    assert creator.status_code == 201
    assert creator.json()["trial_days"] == 14

    duplicate = client.post("/admin/billing/codes/promo", json={"code": "ALICE", "tier_granted": "tier_1"})
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "code_exists"

    listed = client.get("/admin/billing/codes")
    assert {item["code"] for item in listed.json()} == {"LAUNCH", "ALICE"}

    deactivated = client.post(f"/admin/billing/codes/promo/{promo.json()['id']}/deactivate")
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False
    active = client.get("/admin/billing/codes", params={"active_only": "true"})
    assert [item["code"] for item in active.json()] == ["ALICE"]

    _as_user(auth_state)
    forbidden = client.post("/admin/billing/codes/promo", json={"code": "NOPE", "tier_granted": "tier_1"})
    assert forbidden.status_code == 403


def test_redeem_reports_rejections_as_unsuccessful_responses(
    client: TestClient,
    auth_state: dict[str, AuthUser],
) -> None:
    created = client.post("/admin/billing/codes/promo", json={"code": "WELCOME", "tier_granted": "tier_1"})
    assert created.status_code == 201
    _as_user(auth_state)

    applied = client.post("/codes/redeem", json={"code": "welcome"})
    assert applied.status_code == 200
    assert applied.json()["success"] is True
    assert applied.json()["tier"] == "tier_1"
    assert applied.json()["code_type"] == "promo"

    again = client.post("/codes/redeem", json={"code": "WELCOME"})
    assert again.status_code == 200
    assert again.json() == {
        "success": False,
        "message": "You have already redeemed this code",
        "error": "already_redeemed",
        "code_type": None,
        "tier": None,
        "trial_days": None,
        "discount_percentage": None,
    }

    unknown = client.post("/codes/redeem", json={"code": "UNKNOWN"})
    assert unknown.status_code == 200
    assert unknown.json()["success"] is False
    assert unknown.json()["error"] == "invalid_code"

    blank = client.post("/codes/redeem", json={"code": "  "}, headers={"X-Correlation-Id": "corr-blank"})
    assert blank.status_code == 400
    assert blank.json()["error"] == "code_required"
    assert blank.json()["correlation_id"] == "corr-blank"

    subscription = client.get("/subscriptions/me")
    assert subscription.status_code == 200
    assert subscription.json()["tier"] == "tier_1"
    assert subscription.json()["grace_days_remaining"] == 0


def test_anonymous_callers_cannot_redeem(client: TestClient, auth_state: dict[str, AuthUser]) -> None:
    auth_state["user"] = AuthUser(sub="anonymous", roles=["guest"])

    response = client.post("/codes/redeem", json={"code": "WELCOME"})

    assert response.status_code == 401


def test_subscription_endpoints_provision_and_list_changes(
    client: TestClient,
    auth_state: dict[str, AuthUser],
) -> None:
    _as_user(auth_state, "user-9")

    missing = client.get("/subscriptions/me")
    assert missing.status_code == 404
    assert missing.json()["error"] == "subscription_not_found"

    provisioned = client.post("/subscriptions/me")
    assert provisioned.status_code == 201
    assert provisioned.json()["tier"] == "free"
    assert client.post("/subscriptions/me").json()["id"] == provisioned.json()["id"]

    cancel = client.post("/subscriptions/me/cancel", json={"immediate": True})
    assert cancel.status_code == 422
    assert cancel.json()["error"] == "nothing_to_cancel"

    changes = client.get("/subscriptions/me/changes")
    assert changes.status_code == 200
    assert [item["change_type"] for item in changes.json()] == ["provisioned"]
