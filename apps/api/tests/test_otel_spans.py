from __future__ import annotations

import os
import time
from collections.abc import Generator
from typing import Any

import pytest
import stripe
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from printshop.context import reset_correlation_id, set_correlation_id
from printshop.core.auth import AuthUser, get_current_user
from printshop.core.config import get_settings
from printshop.core.database import Base, get_db
from printshop.core.errors import ExternalServiceError
from printshop.integrations.processor import StripePaymentProcessor
from printshop.main import app
from printshop.middleware.rate_limit import reset_rate_limiter
from printshop.otel import setup_inmemory_otel


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
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/subscriptions/me", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_processor_call_span_carries_operation_and_correlation(
    span_exporter: InMemorySpanExporter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    period_end = int(time.time()) + 86400

    def fake_retrieve(subscription_id: str, **kwargs: Any) -> dict[str, Any]:
        return {
            "id": subscription_id,
            "customer": "cus_1",
            "status": "active",
            "items": {"data": [{"id": "si_1", "current_period_end": period_end}]},
        }

    monkeypatch.setattr(stripe.Subscription, "retrieve", fake_retrieve)
    processor = StripePaymentProcessor("sk_test_otel", timeout_seconds=5)

    token = set_correlation_id("otel-processor-1")
    try:
        remote = processor.retrieve_subscription("sub_1")
    finally:
        reset_correlation_id(token)

    assert remote.item_id == "si_1"
    assert remote.current_period_end is not None
    assert int(remote.current_period_end.timestamp()) == period_end

    processor_spans = [span for span in span_exporter.get_finished_spans() if span.name == "processor.retrieve_subscription"]
    assert processor_spans
    assert processor_spans[-1].attributes.get("correlation_id") == "otel-processor-1"
    assert processor_spans[-1].attributes.get("subscription_id") == "sub_1"
    assert processor_spans[-1].attributes.get("processor.name") == "stripe"
    assert processor_spans[-1].attributes.get("processor.operation") == "retrieve_subscription"


def test_unconfigured_processor_fails_inside_its_span(span_exporter: InMemorySpanExporter) -> None:
    processor = StripePaymentProcessor("", timeout_seconds=5)

    with pytest.raises(ExternalServiceError) as exc:
        processor.cancel_subscription("sub_1")

    assert exc.value.operation == "cancel_subscription"
    assert any(span.name == "processor.cancel_subscription" for span in span_exporter.get_finished_spans())
