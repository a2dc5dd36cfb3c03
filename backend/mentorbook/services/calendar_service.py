# backend/mentorbook/services/calendar_service.py
"""
Calendar Service for the MentorBook entitlement core.

``book_slot`` is a plain insert. Whether the interval is free is decided by
the database (exclusion constraint on PostgreSQL, trigger on SQLite) at that
insert, so two workers booking the same mentor at the same moment cannot both
win. ``check_availability`` is advisory only and exists to fail fast with a
friendlier error before any other work is done.
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    ConflictException,
    NotFoundException,
    TimeConflictException,
    ValidationException,
)
from ..models.calendar_slot import NO_OVERLAP_CONSTRAINT, CalendarSlot, SlotStatus, SubjectRole
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.calendar_repository import CalendarRepository
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import TimeInterval
from .base import BaseService

logger = logging.getLogger(__name__)

CALENDAR_CONFLICT_MESSAGE = "This time overlaps an existing booking on the calendar"
RESCHEDULED_REASON = "rescheduled"
EXCLUSION_VIOLATION_PGCODE = "23P01"
DEADLOCK_PGCODE = "40P01"

_VALID_ROLES = {role.value for role in SubjectRole}

IntervalLike = Union[TimeInterval, Tuple[datetime, datetime]]


class CalendarService(BaseService):
    """Occupy and free per-person time intervals."""

    def __init__(self, db: Session, repository: Optional[CalendarRepository] = None):
        super().__init__(db)
        self.repository = repository or RepositoryFactory.create_calendar_repository(db)

    @staticmethod
    def _is_overlap_violation(integrity_error: IntegrityError) -> bool:
        """Whether an IntegrityError came from the calendar overlap rule."""
        orig = getattr(integrity_error, "orig", None)
        diag = getattr(orig, "diag", None)
        constraint_name = getattr(diag, "constraint_name", "") if diag is not None else ""
        if constraint_name:
            return constraint_name == NO_OVERLAP_CONSTRAINT

        pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if pgcode == EXCLUSION_VIOLATION_PGCODE:
            return True
        return NO_OVERLAP_CONSTRAINT in str(orig if orig is not None else integrity_error)

    @staticmethod
    def _is_deadlock_error(exc: OperationalError) -> bool:
        orig = getattr(exc, "orig", None)
        pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if pgcode == DEADLOCK_PGCODE:
            return True
        return "deadlock detected" in str(exc).lower()

    @staticmethod
    def _coerce_interval(interval: IntervalLike) -> TimeInterval:
        if isinstance(interval, TimeInterval):
            return interval
        try:
            start_at, end_at = interval
            return TimeInterval(start_at=start_at, end_at=end_at)
        except ValueError as exc:
            raise ValidationException(
                "Invalid time interval", code="INVALID_INTERVAL", details={"error": str(exc)}
            ) from exc

    @staticmethod
    def _conflict_details(
        subject_id: str,
        role: Optional[str],
        interval: TimeInterval,
        stage: str,
        conflicting: Optional[List[CalendarSlot]] = None,
    ) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            "subject_id": subject_id,
            "conflict_scope": role,
            "stage": stage,
            "requested_start": interval.start_at.isoformat(),
            "requested_end": interval.end_at.isoformat(),
        }
        if conflicting:
            details["conflicting_slot_ids"] = [slot.id for slot in conflicting]
        return details

    def check_availability(self, subject_id: str, interval: IntervalLike) -> bool:
        """Advisory read: True when no booked slot overlaps ``interval``."""
        window = self._coerce_interval(interval)
        return not self.repository.find_overlapping(subject_id, window.start_at, window.end_at)

    def ensure_available(
        self, subject_id: str, interval: IntervalLike, role: Optional[str] = None
    ) -> None:
        """Raise TimeConflictException (stage ``precheck``) if ``interval`` is taken."""
        window = self._coerce_interval(interval)
        conflicting = self.repository.find_overlapping(subject_id, window.start_at, window.end_at)
        if conflicting:
            prometheus_metrics.record_calendar_conflict("precheck")
            raise TimeConflictException(
                CALENDAR_CONFLICT_MESSAGE,
                details=self._conflict_details(subject_id, role, window, "precheck", conflicting),
            )

    def get_booked_slots(
        self,
        subject_id: str,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
    ) -> List[CalendarSlot]:
        return self.repository.list_booked(subject_id, start_at, end_at)

    @BaseService.measure_operation("book_slot")
    def book_slot(
        self,
        subject_id: str,
        role: str,
        interval: IntervalLike,
        booking_id: Optional[str] = None,
        *,
        meeting_id: Optional[str] = None,
        title: Optional[str] = None,
        session_type: Optional[str] = None,
        use_transaction: bool = True,
    ) -> CalendarSlot:
        """
        Occupy ``interval`` on ``subject_id``'s calendar.

        Raises:
            TimeConflictException: a booked slot for the subject overlaps
                (stage ``insert``).
        """
        if role not in _VALID_ROLES:
            raise ValidationException(
                f"Unknown calendar role: {role}",
                code="INVALID_ROLE",
                details={"role": role, "allowed": sorted(_VALID_ROLES)},
            )
        window = self._coerce_interval(interval)

        with self.optional_transaction(use_transaction):
            slot = self._insert_booked(
                subject_id,
                role,
                window,
                booking_id=booking_id,
                meeting_id=meeting_id,
                title=title,
                session_type=session_type,
            )

        self.log_operation(
            "book_slot",
            slot_id=slot.id,
            subject_id=subject_id,
            role=role,
            booking_id=booking_id,
        )
        return slot

    @BaseService.measure_operation("reschedule_slot")
    def reschedule_slot(
        self,
        slot_id: str,
        interval: IntervalLike,
        reason: str = RESCHEDULED_REASON,
        *,
        use_transaction: bool = True,
    ) -> CalendarSlot:
        """
        Move a booked slot to ``interval``.

        The old slot is cancelled and a new booked slot is inserted for the
        same person and booking. The new interval may overlap the old one.
        If the insert conflicts nothing changes: the old slot stays booked.

        Raises:
            TimeConflictException: another booked slot overlaps ``interval``.
        """
        window = self._coerce_interval(interval)

        with self.optional_transaction(use_transaction):
            old_slot = self._transition(slot_id, SlotStatus.CANCELLED, reason, use_transaction=False)
            slot = self._insert_booked(
                old_slot.subject_id,
                old_slot.subject_role,
                window,
                booking_id=old_slot.booking_id,
                meeting_id=old_slot.meeting_id,
                title=old_slot.title,
                session_type=old_slot.session_type,
            )

        self.log_operation(
            "reschedule_slot",
            slot_id=slot_id,
            new_slot_id=slot.id,
            subject_id=slot.subject_id,
            booking_id=slot.booking_id,
        )
        return slot

    @BaseService.measure_operation("release_slot")
    def release_slot(
        self,
        slot_id: str,
        reason: Optional[str] = None,
        *,
        use_transaction: bool = True,
    ) -> CalendarSlot:
        """Cancel a booked slot, freeing its interval."""
        return self._transition(slot_id, SlotStatus.CANCELLED, reason, use_transaction)

    @BaseService.measure_operation("complete_slot")
    def complete_slot(self, slot_id: str, *, use_transaction: bool = True) -> CalendarSlot:
        """Mark a booked slot as completed."""
        return self._transition(slot_id, SlotStatus.COMPLETED, None, use_transaction)

    def transition_booking_slots(
        self,
        booking_id: str,
        status: SlotStatus,
        reason: Optional[str] = None,
    ) -> List[CalendarSlot]:
        """Move every booked slot of a booking to ``status``; caller owns the transaction."""
        slots = [slot for slot in self.repository.list_for_booking(booking_id) if slot.is_booked]
        for slot in slots:
            slot.status = status.value
            if reason:
                slot.reason = reason
        self.repository.flush()
        return slots

    def _transition(
        self,
        slot_id: str,
        status: SlotStatus,
        reason: Optional[str],
        use_transaction: bool,
    ) -> CalendarSlot:
        with self.optional_transaction(use_transaction):
            slot = self.repository.get_by_id(slot_id)
            if slot is None:
                raise NotFoundException(
                    f"Calendar slot {slot_id} not found",
                    code="SLOT_NOT_FOUND",
                    details={"slot_id": slot_id},
                )
            if not slot.is_booked:
                raise ConflictException(
                    f"Calendar slot {slot_id} is already {slot.status}",
                    code="SLOT_NOT_BOOKED",
                    details={"slot_id": slot_id, "status": slot.status},
                )
            slot.status = status.value
            if reason:
                slot.reason = reason
            self.repository.flush()

        return slot

    def _insert_booked(
        self,
        subject_id: str,
        role: str,
        window: TimeInterval,
        **fields: Optional[str],
    ) -> CalendarSlot:
        """Insert a booked slot, mapping an overlap rejection to TimeConflictException."""
        try:
            return self.repository.insert_booked_slot(
                subject_id=subject_id,
                subject_role=role,
                start_at=window.start_at,
                end_at=window.end_at,
                duration_minutes=window.duration_minutes,
                **fields,
            )
        except IntegrityError as exc:
            if not self._is_overlap_violation(exc):
                raise
            prometheus_metrics.record_calendar_conflict("insert")
            self.logger.info(
                "Calendar overlap rejected at insert",
                extra={"subject_id": subject_id, "booking_id": fields.get("booking_id")},
            )
            raise TimeConflictException(
                CALENDAR_CONFLICT_MESSAGE,
                details=self._conflict_details(subject_id, role, window, "insert"),
            ) from exc
        except OperationalError as exc:
            if not self._is_deadlock_error(exc):
                raise
            prometheus_metrics.record_calendar_conflict("insert")
            raise TimeConflictException(
                CALENDAR_CONFLICT_MESSAGE,
                details=self._conflict_details(subject_id, role, window, "insert"),
            ) from exc
