# backend/mentorbook/tasks/beat_schedule.py
"""
Celery Beat schedule configuration for MentorBook.

The hold reaper runs on a fixed interval so abandoned holds return their units
promptly; entitlement expiry and ledger archiving run once a day.
"""

from datetime import timedelta
from typing import Any

from celery.schedules import crontab

from mentorbook.core.config import settings


def _base_schedule() -> dict[str, dict[str, Any]]:
    return {
        "expire-stale-holds": {
            "task": "mentorbook.tasks.hold_tasks.expire_stale_holds",
            "schedule": timedelta(seconds=settings.hold_reaper_interval_seconds),
            "options": {
                "queue": "holds",
                # Never let a backlog of reaper runs pile up
                "expires": settings.hold_reaper_interval_seconds,
                "priority": 8,
            },
        },
        "expire-lapsed-entitlements": {
            "task": "mentorbook.tasks.entitlement_tasks.expire_lapsed_entitlements",
            "schedule": crontab(hour=2, minute=30),  # Daily at 2:30 AM UTC
            "options": {
                "queue": "maintenance",
                "priority": 3,
            },
        },
        "archive-ledger-entries": {
            "task": "mentorbook.tasks.ledger_tasks.archive_ledger_entries",
            "schedule": crontab(hour=2, minute=0),  # Daily at 2:00 AM UTC
            "options": {
                "queue": "maintenance",
                "priority": 2,
            },
        },
    }


SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "test": {
        "expire-stale-holds": {
            "task": "mentorbook.tasks.hold_tasks.expire_stale_holds",
            "schedule": timedelta(seconds=30),
            "options": {"queue": "holds", "priority": 10},
        },
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """
    Get the beat schedule for the specified environment.

    Args:
        environment: The environment name (production, development, test)

    Returns:
        Mapping of schedule entry name to Celery beat configuration dict
    """
    base = _base_schedule()
    overrides = SCHEDULE_CONFIG.get(environment)
    if overrides:
        base.update(overrides)
    return base
