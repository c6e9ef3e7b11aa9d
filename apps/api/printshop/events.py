from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session, SessionTransaction

from printshop.context import get_correlation_id
from printshop.core.events import event_bus

published_events: list[dict[str, Any]] = []

_PENDING_KEY = "printshop.pending_events"


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    envelope.setdefault("occurred_at", datetime.now(timezone.utc).isoformat())

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def publish_on_commit(session: Session, envelope: dict[str, Any]) -> None:
    """Queue an envelope that is only published once ``session`` commits."""

    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    session.info.setdefault(_PENDING_KEY, []).append(envelope)


@event.listens_for(Session, "after_commit")
def _publish_pending(session: Session) -> None:
    for envelope in session.info.pop(_PENDING_KEY, []):
        publish(envelope)


@event.listens_for(Session, "after_soft_rollback")
def _discard_pending(session: Session, previous_transaction: SessionTransaction) -> None:
    session.info.pop(_PENDING_KEY, None)
