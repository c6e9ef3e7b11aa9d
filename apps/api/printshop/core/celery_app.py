from celery import Celery
from celery.schedules import crontab

from printshop.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "printshop_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["printshop.business.grace.tasks"],
)
celery_app.conf.timezone = "UTC"
celery_app.conf.beat_schedule = {
    "expire-grace-periods": {
        "task": "printshop.grace.sweep_expired_grace_periods",
        "schedule": crontab(minute=5),
    },
    "expire-lapsed-entitlements": {
        "task": "printshop.grace.expire_lapsed_entitlements",
        "schedule": crontab(minute=35),
    },
    "send-grace-reminders": {
        "task": "printshop.grace.send_grace_reminders",
        "schedule": crontab(hour=9, minute=0),
    },
}
