"""Celery task for ledger archiving."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from mentorbook.database import new_session
from mentorbook.monitoring.prometheus_metrics import prometheus_metrics
from mentorbook.services.ledger_archive_service import ArchiveLedgerResult, LedgerArchiveService
from mentorbook.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="mentorbook.tasks.ledger_tasks.archive_ledger_entries")  # type: ignore[misc]
def archive_ledger_entries(batch_size: Optional[int] = None) -> ArchiveLedgerResult:
    """Copy ledger entries past their archive policy into the archive table."""
    db: Optional[Session] = None
    try:
        db = new_session()
        results = LedgerArchiveService(db).archive_ledger_entries(batch_size=batch_size)
    except Exception:
        prometheus_metrics.record_reaper_run("archive_ledger_entries", "error")
        logger.exception("Ledger archive run failed")
        raise
    finally:
        if db is not None:
            db.close()

    prometheus_metrics.record_reaper_run(
        "archive_ledger_entries", "partial" if results["failed"] else "success"
    )
    logger.info(
        "Archived %s ledger entries across %s scopes",
        results["archived"],
        results["scopes"],
    )
    return results
