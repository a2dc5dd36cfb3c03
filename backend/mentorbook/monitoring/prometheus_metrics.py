"""
Prometheus metrics module for MentorBook.

Service timings are fed by ``@BaseService.measure_operation``; the domain
counters below are incremented directly by the services that own the event.
"""

import logging
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "mentorbook_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "mentorbook_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "mentorbook_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

ledger_entries_total = Counter(
    "mentorbook_ledger_entries_total",
    "Ledger entries written",
    ["entry_type", "service_type"],
    registry=REGISTRY,
)

holds_created_total = Counter(
    "mentorbook_holds_created_total",
    "Service holds created",
    ["service_type"],
    registry=REGISTRY,
)

hold_transitions_total = Counter(
    "mentorbook_hold_transitions_total",
    "Service holds moved to a terminal status",
    ["status", "reason"],
    registry=REGISTRY,
)

calendar_conflicts_total = Counter(
    "mentorbook_calendar_conflicts_total",
    "Calendar overlap rejections by detection stage",
    ["stage"],  # precheck | insert
    registry=REGISTRY,
)

booking_attempts_total = Counter(
    "mentorbook_booking_attempts_total",
    "Booking saga outcomes",
    ["outcome"],
    registry=REGISTRY,
)

orphaned_meetings_total = Counter(
    "mentorbook_orphaned_meetings_total",
    "Meetings created for a booking that did not commit",
    ["cleanup"],  # cancelled | failed
    registry=REGISTRY,
)

ledger_entries_archived_total = Counter(
    "mentorbook_ledger_entries_archived_total",
    "Ledger entries copied to the archive",
    ["scope"],  # subject | service_type | global
    registry=REGISTRY,
)

reaper_runs_total = Counter(
    "mentorbook_reaper_runs_total",
    "Periodic sweep executions",
    ["job", "status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin facade so callers do not import individual collectors."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_ledger_entry(entry_type: str, service_type: str) -> None:
        ledger_entries_total.labels(entry_type=entry_type, service_type=service_type).inc()

    @staticmethod
    def record_hold_created(service_type: str) -> None:
        holds_created_total.labels(service_type=service_type).inc()

    @staticmethod
    def record_hold_transition(status: str, reason: Optional[str]) -> None:
        hold_transitions_total.labels(status=status, reason=reason or "unspecified").inc()

    @staticmethod
    def record_calendar_conflict(stage: str) -> None:
        calendar_conflicts_total.labels(stage=stage).inc()

    @staticmethod
    def record_booking_attempt(outcome: str) -> None:
        booking_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_orphaned_meeting(cleanup: str) -> None:
        orphaned_meetings_total.labels(cleanup=cleanup).inc()

    @staticmethod
    def record_ledger_archived(scope: str, count: int) -> None:
        if count > 0:
            ledger_entries_archived_total.labels(scope=scope).inc(count)

    @staticmethod
    def record_reaper_run(job: str, status: str) -> None:
        reaper_runs_total.labels(job=job, status=status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)

    @staticmethod
    def get_content_type() -> str:
        return CONTENT_TYPE_LATEST


prometheus_metrics = PrometheusMetrics()
