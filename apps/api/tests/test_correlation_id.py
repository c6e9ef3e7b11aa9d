from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printshop import events
from printshop.business.codes.schemas import PromoCodeCreate
from printshop.business.codes.service import code_redemption_service
from printshop.business.entitlements.models import SubscriptionChangeLog
from printshop.core.auth import AuthUser, get_current_user
from printshop.core.config import get_settings
from printshop.core.database import Base, get_db
from printshop.integrations.processor import ProcessorSubscription, get_payment_processor
from printshop.main import app
from printshop.middleware.rate_limit import reset_rate_limiter
from printshop.platform.security.context import AuthContext


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_payment_processor] = NoopProcessor
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/subscriptions/me")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/subscriptions/me", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_truncated(client: TestClient) -> None:
    long_id = "c" * 300
    response = client.get("/subscriptions/me", headers={"X-Correlation-Id": long_id})
    assert response.headers.get("x-correlation-id") == long_id[:128]
    assert response.json()["correlation_id"] == long_id[:128]


def test_change_log_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    response = client.post("/subscriptions/me", headers={"X-Correlation-Id": "corr-change-1"})
    assert response.status_code == 201

    change = db_session.scalar(select(SubscriptionChangeLog).where(SubscriptionChangeLog.user_id == "user-1"))
    assert change is not None
    assert change.correlation_id == "corr-change-1"


def test_event_envelope_includes_correlation_id(client: TestClient, db_session: Session) -> None:
    admin = AuthContext(user_id="admin-1", is_super_admin=True, roles=["admin"])
    code_redemption_service.create_promo_code(db_session, admin, PromoCodeCreate(code="CORR", tier_granted="tier_1"))

    response = client.post("/codes/redeem", json={"code": "CORR"}, headers={"X-Correlation-Id": "corr-event-1"})
    assert response.status_code == 200
    assert response.json()["success"] is True

    redeemed = [item for item in events.published_events if item.get("event_type") == "code.redeemed"]
    assert redeemed
    assert redeemed[-1].get("correlation_id") == "corr-event-1"


def test_rate_limited_response_includes_correlation_id(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CODE_REDEMPTIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post("/codes/redeem", json={"code": "ANY"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 200

    second = client.post("/codes/redeem", json={"code": "ANY"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"
