"""
Celery tasks package for MentorBook.

Periodic maintenance for the entitlement core:
- Hold reaper (expire stale holds)
- Entitlement validity expiry
- Ledger archiving
"""

from mentorbook.tasks.celery_app import BaseTask, celery_app
from mentorbook.tasks.entitlement_tasks import expire_lapsed_entitlements
from mentorbook.tasks.hold_tasks import expire_stale_holds
from mentorbook.tasks.ledger_tasks import archive_ledger_entries

__all__ = [
    "celery_app",
    "BaseTask",
    "archive_ledger_entries",
    "expire_lapsed_entitlements",
    "expire_stale_holds",
]
