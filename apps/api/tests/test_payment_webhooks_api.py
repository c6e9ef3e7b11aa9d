from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Generator
from datetime import timedelta
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printshop import events
from printshop.business.entitlements.models import UserSubscription
from printshop.business.invoices.models import Invoice
from printshop.business.payments.models import ProcessedPaymentEvent
from printshop.core.auth import AuthUser, get_current_user
from printshop.core.config import get_settings
from printshop.core.database import Base, get_db, utcnow
from printshop.integrations.processor import CheckoutSession, ProcessorSubscription, get_payment_processor
from printshop.main import app
from printshop.middleware.rate_limit import reset_rate_limiter


WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor:
    def __init__(self) -> None:
        self.period_end = (utcnow() + timedelta(days=30)).replace(microsecond=0)
        self.checkout_requests: list[dict[str, Any]] = []

    def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        return ProcessorSubscription(
            id=subscription_id,
            customer_id="cus_1",
            status="active",
            current_period_end=self.period_end,
        )

    def create_checkout_session(self, **kwargs: Any) -> CheckoutSession:
        self.checkout_requests.append(kwargs)
        return CheckoutSession(id="cs_new", url="https://checkout.example/cs_new", metadata=kwargs["metadata"])


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
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()


@pytest.fixture()
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture()
def client(db_session: Session, processor: FakeProcessor) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_payment_processor] = lambda: processor

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _post_event(client: TestClient, event: dict[str, Any], *, secret: str = WEBHOOK_SECRET):  # type: ignore[no-untyped-def]
    payload = json.dumps(event).encode("utf-8")
    return client.post(
        "/payments/webhooks/stripe",
        content=payload,
        headers={"stripe-signature": _sign(payload, secret), "content-type": "application/json"},
    )


def _checkout_event(event_id: str = "evt_checkout_1", *, subscription: str = "sub_1") -> dict[str, Any]:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": "cs_1",
                "customer": "cus_1",
                "subscription": subscription,
                "invoice": "in_1",
                "amount_total": 1999,
                "currency": "eur",
                "metadata": {"userId": "user-1", "tier": "tier_2", "billingPeriod": "monthly"},
            }
        },
    }


def _subscription_event(event_id: str, event_type: str, subscription_id: str, *, created: int | None = None) -> dict[str, Any]:
    return {
        "id": event_id,
        "type": event_type,
        "created": created or int(time.time()),
        "data": {
            "object": {
                "id": subscription_id,
                "customer": "cus_1",
                "status": "canceled" if event_type.endswith("deleted") else "active",
                "items": {"data": [{"id": "si_1", "current_period_end": int(time.time()) + 86400 * 30}]},
            }
        },
    }


def _invoice_count(session: Session) -> int:
    return session.scalar(select(func.count()).select_from(Invoice)) or 0


def _subscription(session: Session) -> UserSubscription:
    session.expire_all()
    row = session.scalar(select(UserSubscription).where(UserSubscription.user_id == "user-1"))
    assert row is not None
    return row


def test_missing_or_forged_signatures_are_rejected(client: TestClient, db_session: Session) -> None:
    payload = json.dumps(_checkout_event()).encode("utf-8")

    missing = client.post("/payments/webhooks/stripe", content=payload)
    assert missing.status_code == 400
    assert missing.json()["error"] == "missing_signature"

    forged = _post_event(client, _checkout_event(), secret="whsec_someone_else")
    assert forged.status_code == 400
    assert forged.json()["error"] == "invalid_signature"

    assert _invoice_count(db_session) == 0
    assert db_session.scalar(select(func.count()).select_from(ProcessedPaymentEvent)) == 0


def test_unconfigured_webhook_secret_rejects_everything(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    get_settings.cache_clear()

    response = _post_event(client, _checkout_event())

    assert response.status_code == 400
    assert response.json()["error"] == "webhook_not_configured"


def test_checkout_and_replayed_events_produce_a_single_invoice(
    client: TestClient,
    db_session: Session,
    processor: FakeProcessor,
) -> None:
    first = _post_event(client, _checkout_event())
    assert first.status_code == 200
    assert first.json() == {
        "received": True,
        "handled": True,
        "duplicate": False,
        "event_type": "checkout.session.completed",
    }

    replay = _post_event(client, _checkout_event())
    assert replay.status_code == 200
    assert replay.json()["duplicate"] is True

    invoice_paid = {
        "id": "evt_invoice_1",
        "type": "invoice.payment_succeeded",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": "in_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "amount_paid": 1999,
                "currency": "eur",
            }
        },
    }
    assert _post_event(client, invoice_paid).json()["handled"] is True

    assert _invoice_count(db_session) == 1
    subscription = _subscription(db_session)
    assert subscription.tier == "tier_2"
    assert subscription.status == "active"
    assert subscription.billing_period == "monthly"
    assert subscription.is_paid_subscription is True
    assert subscription.external_subscription_id == "sub_1"
    assert subscription.external_customer_id == "cus_1"
    assert subscription.next_billing_date == processor.period_end

    invoices = client.get("/invoices")
    assert invoices.status_code == 200
    assert len(invoices.json()) == 1
    assert invoices.json()[0]["amount"] == "19.99"
    assert invoices.json()[0]["currency"] == "EUR"
    assert invoices.json()[0]["status"] == "paid"

    tier_events = [item for item in events.published_events if item["event_type"] == "subscription.tier_changed"]
    assert len(tier_events) == 1


def test_deletion_of_a_replaced_subscription_is_ignored(client: TestClient, db_session: Session) -> None:
    assert _post_event(client, _checkout_event()).status_code == 200
    subscription = _subscription(db_session)
    subscription.external_subscription_id = "sub_2"
    db_session.commit()

    stale = _post_event(client, _subscription_event("evt_deleted_old", "customer.subscription.deleted", "sub_1"))
    assert stale.status_code == 200
    subscription = _subscription(db_session)
    assert subscription.tier == "tier_2"
    assert subscription.external_subscription_id == "sub_2"

    current = _post_event(client, _subscription_event("evt_deleted_new", "customer.subscription.deleted", "sub_2"))
    assert current.status_code == 200
    subscription = _subscription(db_session)
    assert subscription.tier == "free"
    assert subscription.status == "cancelled"
    assert subscription.is_paid_subscription is False
    assert subscription.previous_tier == "tier_2"
    assert subscription.grace_period_end is not None


def test_out_of_order_subscription_updates_are_ignored(client: TestClient, db_session: Session) -> None:
    assert _post_event(client, _checkout_event()).status_code == 200
    now = int(time.time())

    newer = _subscription_event("evt_updated_new", "customer.subscription.updated", "sub_1", created=now)
    newer["data"]["object"]["status"] = "past_due"
    assert _post_event(client, newer).status_code == 200

    older = _subscription_event("evt_updated_old", "customer.subscription.updated", "sub_1", created=now - 600)
    older["data"]["object"]["status"] = "canceled"
    assert _post_event(client, older).status_code == 200

    subscription = _subscription(db_session)
    assert subscription.status == "active"
    assert db_session.scalar(select(func.count()).select_from(ProcessedPaymentEvent)) == 3


def test_unhandled_and_malformed_events(client: TestClient, db_session: Session) -> None:
    ignored = _post_event(client, {"id": "evt_other", "type": "customer.created", "data": {"object": {"id": "cus_9"}}})
    assert ignored.status_code == 200
    assert ignored.json()["handled"] is False

    malformed = _post_event(client, {"id": "evt_bad", "type": "checkout.session.completed", "data": {}})
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "malformed_payload"

    orphan = _checkout_event("evt_orphan")
    orphan["data"]["object"]["metadata"] = {}
    skipped = _post_event(client, orphan)
    assert skipped.status_code == 200
    assert skipped.json()["handled"] is False
    assert _invoice_count(db_session) == 0
    recorded = db_session.scalar(select(ProcessedPaymentEvent).where(ProcessedPaymentEvent.event_id == "evt_orphan"))
    assert recorded is not None


def test_checkout_session_creation_for_paid_tiers(client: TestClient, processor: FakeProcessor) -> None:
    response = client.post(
        "/payments/checkout-sessions",
        json={
            "tier": "tier_1",
            "billing_period": "annual",
            "success_url": "https://app.example/success",
            "cancel_url": "https://app.example/cancel",
        },
    )
    assert response.status_code == 200
    assert response.json() == {"session_id": "cs_new", "url": "https://checkout.example/cs_new"}
    request = processor.checkout_requests[0]
    assert request["unit_amount_cents"] == 9990
    assert request["metadata"] == {"userId": "user-1", "tier": "tier_1", "billingPeriod": "annual"}

    free = client.post(
        "/payments/checkout-sessions",
        json={
            "tier": "free",
            "billing_period": "monthly",
            "success_url": "https://app.example/success",
            "cancel_url": "https://app.example/cancel",
        },
    )
    assert free.status_code == 400
    assert free.json()["error"] == "invalid_tier"
