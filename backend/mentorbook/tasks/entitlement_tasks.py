"""Celery task for entitlement validity expiry."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from mentorbook.database import new_session
from mentorbook.monitoring.prometheus_metrics import prometheus_metrics
from mentorbook.services.entitlement_service import EntitlementService, ExpireEntitlementsResult
from mentorbook.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="mentorbook.tasks.entitlement_tasks.expire_lapsed_entitlements")  # type: ignore[misc]
def expire_lapsed_entitlements(batch_size: Optional[int] = None) -> ExpireEntitlementsResult:
    """Write expiration entries for balances whose validity ended."""
    db: Optional[Session] = None
    try:
        db = new_session()
        results = EntitlementService(db).expire_entitlements(batch_size=batch_size)
    except Exception:
        prometheus_metrics.record_reaper_run("expire_lapsed_entitlements", "error")
        logger.exception("Entitlement expiry run failed")
        raise
    finally:
        if db is not None:
            db.close()

    prometheus_metrics.record_reaper_run(
        "expire_lapsed_entitlements", "partial" if results["failed"] else "success"
    )
    logger.info(
        "Expired %s units across %s balances",
        results["expired_units"],
        results["processed"],
    )
    return results
