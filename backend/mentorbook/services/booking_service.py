# backend/mentorbook/services/booking_service.py
"""
Booking Service for the MentorBook entitlement core.

``book`` runs the booking saga for one request:

    1. entitlement check          (read)
    2. calendar pre-check         (read, advisory)
    3. create or adopt the hold   ┐
    4. create the external meeting│ one database transaction
    5. create the booking record  │
    6. occupy the calendar slots  │
    7. commit                     ┘

Any failure in 3-7 rolls back every database write of the attempt, the hold
included. The meeting is the only side effect outside the transaction; when a
later step fails it is cancelled on a best-effort basis, and a meeting that
cannot be cancelled is left orphaned (it references nothing committed).
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    BalanceInvariantViolation,
    BookingNotFoundException,
    BookingStateException,
    DomainException,
    InsufficientBalanceException,
    MeetingProviderException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..integrations.meeting_provider import (
    MeetingProvider,
    MeetingProviderError,
    build_meeting_provider,
)
from ..models.booking import Booking, BookingStatus
from ..models.calendar_slot import CalendarSlot, SlotStatus, SubjectRole
from ..models.entitlement import LedgerEntry
from ..models.hold import HoldReleaseReason, ServiceHold
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.booking_repository import BookingRepository
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import (
    MIN_SESSION_MINUTES,
    BookingRequest,
    BookingResult,
    CalendarSlotRead,
    MeetingInfo,
    TimeInterval,
)
from .base import BaseService
from .calendar_service import CalendarService
from .entitlement_service import EntitlementService
from .hold_service import HoldService

logger = logging.getLogger(__name__)


class BookingService(BaseService):
    """Orchestrates entitlement holds, calendar slots and meetings for bookings."""

    def __init__(
        self,
        db: Session,
        meeting_provider: Optional[MeetingProvider] = None,
        repository: Optional[BookingRepository] = None,
        entitlement_service: Optional[EntitlementService] = None,
        hold_service: Optional[HoldService] = None,
        calendar_service: Optional[CalendarService] = None,
        occupy_student_calendar: Optional[bool] = None,
    ):
        """
        Initialize booking service.

        Args:
            db: Database session shared by every collaborator
            meeting_provider: Meeting provider; defaults to the configured one
            repository: Optional BookingRepository instance
            entitlement_service: Optional EntitlementService instance
            hold_service: Optional HoldService instance
            calendar_service: Optional CalendarService instance
            occupy_student_calendar: Also book the student's calendar
                (defaults to settings.booking_occupy_student_calendar)
        """
        super().__init__(db)
        self.meeting_provider = meeting_provider or build_meeting_provider()
        self.repository = repository or RepositoryFactory.create_booking_repository(db)
        self.hold_service = hold_service or HoldService(db)
        self.entitlement_service = entitlement_service or EntitlementService(
            db, hold_service=self.hold_service
        )
        self.calendar_service = calendar_service or CalendarService(db)
        self.occupy_student_calendar = (
            settings.booking_occupy_student_calendar
            if occupy_student_calendar is None
            else occupy_student_calendar
        )

    # Saga

    @BaseService.measure_operation("book")
    def book(self, request: BookingRequest) -> BookingResult:
        """
        Book a session atomically.

        Raises:
            InsufficientBalanceException: not enough entitlement available.
            TimeConflictException: mentor or student calendar overlap, found at
                pre-check or at insert.
            HoldExpiredException / HoldAlreadyTerminalException: the supplied
                hold can no longer back a booking.
            MeetingProviderException: the meeting could not be created.
        """
        try:
            result = self._run_booking_saga(request)
        except DomainException as exc:
            prometheus_metrics.record_booking_attempt(exc.code.lower())
            self.logger.info(
                "Booking attempt rejected",
                extra={
                    "subject_id": request.subject_id,
                    "mentor_id": request.mentor_id,
                    "error_code": exc.code,
                },
            )
            raise
        except BalanceInvariantViolation as exc:
            prometheus_metrics.record_booking_attempt("invariant_violation")
            self.logger.critical(
                "Balance invariant violated during booking",
                extra={"subject_id": request.subject_id, "details": exc.details},
            )
            raise

        prometheus_metrics.record_booking_attempt("confirmed")
        return result

    def _run_booking_saga(self, request: BookingRequest) -> BookingResult:
        interval = request.interval

        # 1. Entitlement (read-only)
        snapshot = self.entitlement_service.get_entitlement(
            request.subject_id, request.service_type
        )
        if request.hold_id is not None:
            self.hold_service.require_adoptable(
                request.hold_id, request.subject_id, request.service_type, request.quantity
            )
        elif snapshot.available < request.quantity:
            raise InsufficientBalanceException(
                request.subject_id, request.service_type, request.quantity, snapshot.available
            )

        # 2. Calendar (advisory; the insert in step 6 is authoritative)
        self.calendar_service.ensure_available(request.mentor_id, interval, role=request.mentor_role)
        if self.occupy_student_calendar:
            self.calendar_service.ensure_available(
                request.student_id, interval, role=SubjectRole.STUDENT.value
            )

        meeting: Optional[MeetingInfo] = None
        try:
            with self.transaction():
                # 3. Hold
                hold = self._acquire_hold(request)

                # 4. Meeting
                meeting = self._create_meeting(request)

                # 5. Booking record
                booking = self.repository.create(
                    subject_id=request.subject_id,
                    student_id=request.student_id,
                    mentor_id=request.mentor_id,
                    service_type=request.service_type,
                    quantity=request.quantity,
                    hold_id=hold.id,
                    topic=request.topic,
                    start_at=interval.start_at,
                    end_at=interval.end_at,
                    duration_minutes=request.duration_minutes,
                    status=BookingStatus.CONFIRMED.value,
                    meeting_provider=meeting.provider,
                    meeting_id=meeting.meeting_id,
                    meeting_url=meeting.join_url,
                    meeting_password=meeting.password,
                    created_by=request.created_by,
                )
                hold = self.hold_service.attach_to_booking(hold, booking.id)

                # 6. Calendar slots
                slots = self._occupy_calendars(request, booking, meeting)
                # 7. Commit on exit
        except Exception as exc:
            if meeting is not None:
                self._discard_orphaned_meeting(meeting, request, exc)
            raise

        self.log_operation(
            "book",
            booking_id=booking.id,
            subject_id=request.subject_id,
            mentor_id=request.mentor_id,
            student_id=request.student_id,
            hold_id=hold.id,
            meeting_id=meeting.meeting_id,
        )
        return self._build_result(booking, hold, meeting, slots)

    def _acquire_hold(self, request: BookingRequest) -> ServiceHold:
        if request.hold_id is not None:
            return self.hold_service.require_adoptable(
                request.hold_id, request.subject_id, request.service_type, request.quantity
            )
        return self.hold_service.create_hold(
            request.subject_id,
            request.service_type,
            request.quantity,
            created_by=request.created_by,
            use_transaction=False,
        )

    def _create_meeting(self, request: BookingRequest) -> MeetingInfo:
        """Call the provider once; provider failures become MeetingProviderException."""
        try:
            return self.meeting_provider.create_meeting(
                topic=request.topic,
                start=request.start_at,
                duration_minutes=request.duration_minutes,
                host_id=request.mentor_id,
            )
        except MeetingProviderError as exc:
            self.logger.warning(
                "Meeting creation failed",
                extra={
                    "mentor_id": request.mentor_id,
                    "provider": self.meeting_provider.name,
                    "status_code": exc.status_code,
                    "error": exc.message,
                },
            )
            raise MeetingProviderException(
                f"Failed to create meeting: {exc.message}",
                details={
                    "provider": self.meeting_provider.name,
                    "status_code": exc.status_code,
                },
            ) from exc

    def _occupy_calendars(
        self, request: BookingRequest, booking: Booking, meeting: MeetingInfo
    ) -> List[CalendarSlot]:
        occupants = [(request.mentor_id, request.mentor_role)]
        if self.occupy_student_calendar:
            occupants.append((request.student_id, SubjectRole.STUDENT.value))

        return [
            self.calendar_service.book_slot(
                subject_id,
                role,
                request.interval,
                booking.id,
                meeting_id=meeting.meeting_id,
                title=request.topic,
                session_type=request.session_type or request.service_type,
                use_transaction=False,
            )
            for subject_id, role in occupants
        ]

    def _discard_orphaned_meeting(
        self, meeting: MeetingInfo, request: BookingRequest, cause: BaseException
    ) -> None:
        cancelled = self._cancel_meeting_quietly(
            meeting.meeting_id,
            {"mentor_id": request.mentor_id, "cause": type(cause).__name__},
        )
        prometheus_metrics.record_orphaned_meeting("cancelled" if cancelled else "failed")

    def _cancel_meeting_quietly(self, meeting_id: str, context: Dict[str, Any]) -> bool:
        """Best-effort meeting cancellation; failure is logged and reported, never raised."""
        try:
            self.meeting_provider.cancel_meeting(meeting_id)
        except MeetingProviderError as exc:
            self.logger.warning(
                "Failed to cancel meeting",
                extra={"meeting_id": meeting_id, "error": exc.message, **context},
            )
            return False
        return True

    def _build_result(
        self,
        booking: Booking,
        hold: ServiceHold,
        meeting: MeetingInfo,
        slots: List[CalendarSlot],
    ) -> BookingResult:
        balance = self.entitlement_service.get_entitlement(booking.subject_id, booking.service_type)
        return BookingResult(
            booking_id=booking.id,
            status=booking.status,
            subject_id=booking.subject_id,
            service_type=booking.service_type,
            student_id=booking.student_id,
            mentor_id=booking.mentor_id,
            hold_id=hold.id,
            start_at=ensure_utc(booking.start_at),
            end_at=ensure_utc(booking.end_at),
            duration_minutes=booking.duration_minutes,
            meeting=meeting,
            slots=[CalendarSlotRead.model_validate(slot) for slot in slots],
            balance=balance,
        )

    # Post-commit lifecycle

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.repository.get_with_slots(booking_id)
        if booking is None:
            raise BookingNotFoundException(booking_id)
        return booking

    @BaseService.measure_operation("complete_booking")
    def complete_booking(
        self,
        booking_id: str,
        completed_by: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> LedgerEntry:
        """
        Deliver a confirmed booking: consume its entitlement and complete its slots.

        The booking's hold is converted to consumption when it is still
        active; otherwise the units are consumed from ``available``.
        """
        at = ensure_utc(now) or utc_now()
        with self.transaction():
            booking = self._get_for_update(booking_id)
            if not booking.is_confirmed:
                raise BookingStateException(booking_id, booking.status, "complete")

            hold_id = self._active_hold_id(booking)
            entry = self.entitlement_service.record_consumption(
                booking.subject_id,
                booking.service_type,
                booking.quantity,
                booking.id,
                hold_id=hold_id,
                created_by=completed_by,
                use_transaction=False,
            )
            self.calendar_service.transition_booking_slots(booking.id, SlotStatus.COMPLETED)
            booking.complete(completed_by, at)
            self.repository.flush()

        self.log_operation("complete_booking", booking_id=booking_id, ledger_entry_id=entry.id)
        return entry

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Cancel a confirmed booking.

        Cancels the hold if it is still active, frees the calendar slots and
        then asks the provider to cancel the meeting (best effort, after commit).
        """
        at = ensure_utc(now) or utc_now()
        with self.transaction():
            booking = self._get_for_update(booking_id)
            if not booking.is_confirmed:
                raise BookingStateException(booking_id, booking.status, "cancel")

            hold_id = self._active_hold_id(booking)
            if hold_id is not None:
                self.hold_service.cancel_hold(
                    hold_id,
                    reason=HoldReleaseReason.BOOKING_CANCELLED.value,
                    now=at,
                    use_transaction=False,
                    booking_id=booking.id,
                )
            self.calendar_service.transition_booking_slots(booking.id, SlotStatus.CANCELLED, reason)
            booking.cancel(cancelled_by, reason, at)
            self.repository.flush()

        if booking.meeting_id:
            self._cancel_meeting_quietly(booking.meeting_id, {"booking_id": booking_id})

        self.log_operation("cancel_booking", booking_id=booking_id, cancelled_by=cancelled_by)
        return booking

    @BaseService.measure_operation("reschedule_booking")
    def reschedule_booking(
        self,
        booking_id: str,
        start_at: datetime,
        duration_minutes: Optional[int] = None,
        *,
        rescheduled_by: Optional[str] = None,
    ) -> Booking:
        """
        Move a confirmed booking to a new time.

        Every booked calendar slot of the booking is moved in one transaction,
        so a conflict on either calendar leaves the booking and all of its
        slots where they were. The hold and the meeting stay attached.

        Raises:
            TimeConflictException: the new interval is taken on a calendar.
            BookingStateException: the booking is completed or cancelled.
        """
        if duration_minutes is not None and duration_minutes < MIN_SESSION_MINUTES:
            raise ValidationException(
                f"Sessions last at least {MIN_SESSION_MINUTES} minutes",
                code="INVALID_DURATION",
                details={"duration_minutes": duration_minutes},
            )

        with self.transaction():
            booking = self._get_for_update(booking_id)
            if not booking.is_confirmed:
                raise BookingStateException(booking_id, booking.status, "reschedule")

            minutes = duration_minutes or booking.duration_minutes
            window = TimeInterval.starting_at(ensure_utc(start_at), minutes)
            slots = [slot for slot in booking.calendar_slots if slot.is_booked]
            for slot in slots:
                self.calendar_service.reschedule_slot(slot.id, window, use_transaction=False)

            booking.start_at = window.start_at
            booking.end_at = window.end_at
            booking.duration_minutes = minutes
            self.repository.flush()
            self.db.expire(booking, ["calendar_slots"])

        self.log_operation(
            "reschedule_booking",
            booking_id=booking_id,
            start_at=window.start_at.isoformat(),
            duration_minutes=minutes,
            rescheduled_by=rescheduled_by,
        )
        return booking

    def _get_for_update(self, booking_id: str) -> Booking:
        booking = self.repository.get_with_slots(booking_id, for_update=True)
        if booking is None:
            raise BookingNotFoundException(booking_id)
        return booking

    def _active_hold_id(self, booking: Booking) -> Optional[str]:
        if booking.hold_id is None:
            return None
        hold = self.hold_service.hold_repository.get_hold(booking.hold_id, fresh=True)
        return hold.id if hold is not None and hold.is_active else None
