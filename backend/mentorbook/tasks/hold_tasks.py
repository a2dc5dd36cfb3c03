"""Celery task for the hold reaper."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from mentorbook.database import new_session
from mentorbook.monitoring.prometheus_metrics import prometheus_metrics
from mentorbook.services.hold_service import ExpireHoldsResult, HoldService
from mentorbook.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="mentorbook.tasks.hold_tasks.expire_stale_holds")  # type: ignore[misc]
def expire_stale_holds(batch_size: Optional[int] = None) -> ExpireHoldsResult:
    """Expire active holds past their TTL and return their units to ``available``."""
    db: Optional[Session] = None
    try:
        db = new_session()
        results = HoldService(db).expire_holds(batch_size=batch_size)
    except Exception:
        prometheus_metrics.record_reaper_run("expire_stale_holds", "error")
        logger.exception("Hold reaper run failed")
        raise
    finally:
        if db is not None:
            db.close()

    status = "partial" if results["failed"] else "success"
    prometheus_metrics.record_reaper_run("expire_stale_holds", status)
    if results["expired"] or results["failed"]:
        logger.info(
            "Hold reaper expired %s of %s holds (%s failed)",
            results["expired"],
            results["processed"],
            results["failed"],
        )
    return results
