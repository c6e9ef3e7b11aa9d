from printshop.business.grace.service import REMINDER_MILESTONES, GracePeriodManager, days_remaining, grace_period_manager

__all__ = [
    "REMINDER_MILESTONES",
    "GracePeriodManager",
    "days_remaining",
    "grace_period_manager",
]
