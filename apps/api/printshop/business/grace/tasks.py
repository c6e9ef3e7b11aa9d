from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from printshop.business.grace.service import grace_period_manager
from printshop.core.celery_app import celery_app
from printshop.core.database import SessionLocal


logger = logging.getLogger("printshop.grace.tasks")


def _run_sweep(name: str, sweep: Callable[[Session], int]) -> int:
    session = SessionLocal()
    try:
        return sweep(session)
    except Exception:
        session.rollback()
        logger.exception("grace.sweep_failed", extra={"operation": name})
        raise
    finally:
        session.close()


@celery_app.task(name="printshop.grace.sweep_expired_grace_periods")
def sweep_expired_grace_periods_task() -> int:
    return _run_sweep("grace_period_expired", grace_period_manager.sweep_expired_grace_periods)


@celery_app.task(name="printshop.grace.expire_lapsed_entitlements")
def expire_lapsed_entitlements_task() -> int:
    return _run_sweep("entitlement_lapsed", grace_period_manager.expire_lapsed_entitlements)


@celery_app.task(name="printshop.grace.send_grace_reminders")
def send_grace_reminders_task() -> int:
    return _run_sweep("grace_period_reminder", grace_period_manager.send_grace_reminders)
