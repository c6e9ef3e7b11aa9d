from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from printshop.context import reset_correlation_id, set_correlation_id
from printshop.core.auth import AuthUser, get_current_user
from printshop.core.config import get_settings
from printshop.core.database import Base, get_db
from printshop.core.errors import ExternalServiceError
from printshop.integrations.processor import StripePaymentProcessor
from printshop.logging import JsonLogFormatter
from printshop.main import app
from printshop.middleware.rate_limit import reset_rate_limiter


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/invoices/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "printshop.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/invoices/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_failed_processor_calls_are_logged_with_operation_and_correlation(
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    def fail_retrieve(subscription_id: str, **kwargs: object) -> None:
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.Subscription, "retrieve", fail_retrieve)
    processor = StripePaymentProcessor("sk_test_logging", timeout_seconds=5)

    token = set_correlation_id("corr-processor-1")
    try:
        with pytest.raises(ExternalServiceError) as exc:
            processor.retrieve_subscription("sub_1")
    finally:
        reset_correlation_id(token)

    assert exc.value.operation == "retrieve_subscription"
    assert exc.value.details == {"processor_error": "APIConnectionError"}
    records = [record for record in caplog.records if record.name == "printshop.processor"]
    assert any(
        record.getMessage() == "processor.call_failed"
        and getattr(record, "operation", None) == "retrieve_subscription"
        and getattr(record, "correlation_id", None) == "corr-processor-1"
        for record in records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "printshop.codes",
            "msg": "redemption.rejected",
            "levelname": "INFO",
            "user_id": "user-1",
            "outcome": "invalid_code",
            "card_number": "4242424242424242",
            "correlation_id": "corr-json-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["logger"] == "printshop.codes"
    assert payload["msg"] == "redemption.rejected"
    assert payload["correlation_id"] == "corr-json-1"
    assert payload["fields"] == {"user_id": "user-1", "outcome": "invalid_code"}
