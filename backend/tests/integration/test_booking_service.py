"""Booking saga: all-or-nothing across hold, meeting, booking and calendar."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from conftest import (
    MENTOR_ID,
    SERVICE_TYPE,
    SESSION_START,
    STUDENT_ID,
    SUBJECT_ID,
    make_request,
)
from mentorbook.core.exceptions import (
    BookingNotFoundException,
    BookingStateException,
    EntitlementNotFoundException,
    HoldAlreadyTerminalException,
    HoldBoundToBookingException,
    HoldExpiredException,
    InsufficientBalanceException,
    MeetingProviderException,
    TimeConflictException,
    ValidationException,
)
from mentorbook.core.timezone_utils import ensure_utc
from mentorbook.integrations.meeting_provider import MeetingProviderError
from mentorbook.models.booking import Booking
from mentorbook.models.calendar_slot import CalendarSlot
from mentorbook.models.entitlement import LedgerEntry
from mentorbook.models.hold import ServiceHold
from mentorbook.services.booking_service import BookingService


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _balance(entitlement_service):
    snapshot = entitlement_service.get_entitlement(SUBJECT_ID, SERVICE_TYPE)
    return snapshot.total, snapshot.consumed, snapshot.held, snapshot.available


def _assert_nothing_persisted(db):
    assert _count(db, ServiceHold) == 0
    assert _count(db, Booking) == 0
    assert _count(db, CalendarSlot) == 0


class TestBook:
    def test_successful_booking(self, db, booking_service, entitlement_service, meeting_provider, granted):
        result = booking_service.book(make_request(created_by="student_01"))

        assert result.status == "confirmed"
        assert result.start_at == SESSION_START
        assert result.end_at == SESSION_START + timedelta(minutes=60)
        assert result.meeting.meeting_id in meeting_provider.meetings
        assert result.meeting.provider == "fake"
        assert {slot.subject_id for slot in result.slots} == {MENTOR_ID, STUDENT_ID}
        assert all(slot.booking_id == result.booking_id for slot in result.slots)
        assert (result.balance.held, result.balance.available) == (1, 9)
        assert _balance(entitlement_service) == (10, 0, 1, 9)

        booking = booking_service.get_booking(result.booking_id)
        assert booking.hold_id == result.hold_id
        assert booking.meeting_id == result.meeting.meeting_id
        assert booking.meeting_url == result.meeting.join_url
        assert len(booking.calendar_slots) == 2

        hold = db.get(ServiceHold, result.hold_id)
        assert hold.status == "active"
        assert hold.booking_id == result.booking_id
        assert hold.expires_at is None

    def test_meeting_is_created_for_the_mentor(self, booking_service, meeting_provider, granted):
        booking_service.book(make_request(topic="  SAT prep  ", duration_minutes=90))

        call = meeting_provider._calls[-1]
        assert call["topic"] == "SAT prep"
        assert call["host_id"] == MENTOR_ID
        assert call["duration_minutes"] == 90

    def test_student_calendar_can_be_left_free(
        self, db, meeting_provider, entitlement_service, hold_service, calendar_service, granted
    ):
        service = BookingService(
            db,
            meeting_provider=meeting_provider,
            entitlement_service=entitlement_service,
            hold_service=hold_service,
            calendar_service=calendar_service,
            occupy_student_calendar=False,
        )
        result = service.book(make_request())

        assert [slot.subject_id for slot in result.slots] == [MENTOR_ID]
        assert calendar_service.check_availability(
            STUDENT_ID, (SESSION_START, SESSION_START + timedelta(hours=1))
        )

    def test_unknown_entitlement(self, db, booking_service, meeting_provider):
        with pytest.raises(EntitlementNotFoundException):
            booking_service.book(make_request())
        assert meeting_provider._calls == []
        _assert_nothing_persisted(db)

    def test_insufficient_balance_fails_before_side_effects(
        self, db, booking_service, entitlement_service, meeting_provider, granted
    ):
        entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 10)

        with pytest.raises(InsufficientBalanceException):
            booking_service.book(make_request())

        assert meeting_provider._calls == []
        _assert_nothing_persisted(db)

    def test_mentor_conflict_at_precheck(
        self, db, booking_service, entitlement_service, meeting_provider, granted
    ):
        booking_service.book(make_request())
        calls_before = len(meeting_provider._calls)

        with pytest.raises(TimeConflictException) as exc_info:
            booking_service.book(
                make_request(student_id="student_02", start_at=SESSION_START + timedelta(minutes=30))
            )

        assert exc_info.value.details["stage"] == "precheck"
        assert exc_info.value.details["conflict_scope"] == "mentor"
        assert len(meeting_provider._calls) == calls_before
        assert _balance(entitlement_service) == (10, 0, 1, 9)
        assert _count(db, Booking) == 1

    def test_student_conflict_at_precheck(self, booking_service, granted):
        booking_service.book(make_request())

        with pytest.raises(TimeConflictException) as exc_info:
            booking_service.book(make_request(mentor_id="mentor_02"))
        assert exc_info.value.details["conflict_scope"] == "student"

    def test_back_to_back_sessions(self, booking_service, entitlement_service, granted):
        booking_service.book(make_request())
        booking_service.book(make_request(start_at=SESSION_START + timedelta(minutes=60)))
        assert _balance(entitlement_service) == (10, 0, 2, 8)


class TestRollback:
    def test_meeting_failure_rolls_back_everything(
        self, db, booking_service, entitlement_service, meeting_provider, granted
    ):
        meeting_provider.set_error(
            "create_meeting", MeetingProviderError("capacity exhausted", status_code=503)
        )

        with pytest.raises(MeetingProviderException) as exc_info:
            booking_service.book(make_request())

        assert exc_info.value.details["status_code"] == 503
        assert _balance(entitlement_service) == (10, 0, 0, 10)
        _assert_nothing_persisted(db)
        assert meeting_provider.cancelled == []

    def test_calendar_race_rolls_back_and_cancels_meeting(
        self, db, booking_service, calendar_service, entitlement_service, meeting_provider, granted
    ):
        # Another worker takes the mentor's slot after this attempt's pre-check
        calendar_service.book_slot(
            MENTOR_ID, "mentor", (SESSION_START, SESSION_START + timedelta(hours=1))
        )

        with patch.object(calendar_service, "ensure_available"):
            with pytest.raises(TimeConflictException) as exc_info:
                booking_service.book(make_request())

        assert exc_info.value.details["stage"] == "insert"
        assert _balance(entitlement_service) == (10, 0, 0, 10)
        assert _count(db, ServiceHold) == 0
        assert _count(db, Booking) == 0
        assert _count(db, CalendarSlot) == 1
        assert len(meeting_provider.cancelled) == 1
        assert meeting_provider.meetings == {}

    def test_failed_cleanup_leaves_an_orphaned_meeting(
        self, db, booking_service, calendar_service, entitlement_service, meeting_provider, granted
    ):
        calendar_service.book_slot(
            STUDENT_ID, "student", (SESSION_START, SESSION_START + timedelta(hours=1))
        )
        meeting_provider.set_error("cancel_meeting", MeetingProviderError("unreachable"))

        with patch.object(calendar_service, "ensure_available"):
            with pytest.raises(TimeConflictException):
                booking_service.book(make_request())

        assert len(meeting_provider.meetings) == 1
        assert _balance(entitlement_service) == (10, 0, 0, 10)
        assert _count(db, Booking) == 0
        # the mentor slot inserted before the student conflict is gone too
        assert _count(db, CalendarSlot) == 1


class TestAdoptedHold:
    def test_booking_adopts_existing_hold(
        self, db, booking_service, hold_service, entitlement_service, granted
    ):
        hold = hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 1)

        result = booking_service.book(make_request(hold_id=hold.id))

        assert result.hold_id == hold.id
        assert _balance(entitlement_service) == (10, 0, 1, 9)
        adopted = hold_service.get_hold(hold.id)
        assert adopted.booking_id == result.booking_id
        assert adopted.expires_at is None

    def test_expired_hold_cannot_back_a_booking(
        self, db, booking_service, hold_service, entitlement_service, meeting_provider, granted
    ):
        hold = hold_service.create_hold(
            SUBJECT_ID, SERVICE_TYPE, 1, now=SESSION_START - timedelta(days=365 * 10)
        )

        with pytest.raises(HoldExpiredException):
            booking_service.book(make_request(hold_id=hold.id))

        assert meeting_provider._calls == []
        assert _count(db, Booking) == 0

    def test_hold_already_backing_a_booking(self, booking_service, hold_service, granted):
        hold = hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 1)
        booking_service.book(make_request(hold_id=hold.id))

        with pytest.raises(HoldAlreadyTerminalException):
            booking_service.book(
                make_request(
                    hold_id=hold.id,
                    start_at=SESSION_START + timedelta(days=1),
                )
            )

    def test_released_hold(self, booking_service, hold_service, granted):
        hold = hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 1)
        hold_service.release_hold(hold.id)

        with pytest.raises(HoldAlreadyTerminalException):
            booking_service.book(make_request(hold_id=hold.id))

    def test_reaper_leaves_booked_holds_alone(
        self, db, booking_service, hold_service, entitlement_service, granted
    ):
        result = booking_service.book(make_request())

        outcome = hold_service.expire_holds(now=SESSION_START + timedelta(days=30))

        assert outcome["processed"] == 0
        assert db.get(ServiceHold, result.hold_id).status == "active"
        assert _balance(entitlement_service) == (10, 0, 1, 9)

    def test_booked_hold_cannot_be_released_directly(
        self, db, booking_service, hold_service, entitlement_service, granted
    ):
        granted(1, subject_id="contract_solo")
        result = booking_service.book(make_request(subject_id="contract_solo"))

        with pytest.raises(HoldBoundToBookingException) as exc_info:
            hold_service.release_hold(result.hold_id)
        assert exc_info.value.details["booking_id"] == result.booking_id
        with pytest.raises(HoldAlreadyTerminalException):
            hold_service.cancel_hold(result.hold_id)

        assert db.get(ServiceHold, result.hold_id).status == "active"
        snapshot = entitlement_service.get_entitlement("contract_solo", SERVICE_TYPE)
        assert (snapshot.total, snapshot.held, snapshot.available) == (1, 1, 0)
        with pytest.raises(InsufficientBalanceException):
            booking_service.book(
                make_request(subject_id="contract_solo", start_at=SESSION_START + timedelta(days=1))
            )

    def test_booked_hold_cannot_be_consumed_outside_its_booking(
        self, booking_service, entitlement_service, granted
    ):
        result = booking_service.book(make_request())

        with pytest.raises(HoldBoundToBookingException):
            entitlement_service.record_consumption(
                SUBJECT_ID, SERVICE_TYPE, 1, hold_id=result.hold_id
            )

        assert _balance(entitlement_service) == (10, 0, 1, 9)


class TestLifecycle:
    def test_complete_booking_consumes_the_hold(
        self, db, booking_service, hold_service, entitlement_service, calendar_service, granted
    ):
        result = booking_service.book(make_request())

        entry = booking_service.complete_booking(
            result.booking_id, completed_by=MENTOR_ID, now=SESSION_START + timedelta(hours=1)
        )

        assert entry.quantity == -1
        assert entry.hold_id == result.hold_id
        assert entry.booking_id == result.booking_id
        assert _balance(entitlement_service) == (10, 1, 0, 9)

        booking = booking_service.get_booking(result.booking_id)
        assert booking.status == "completed"
        assert booking.completed_by == MENTOR_ID
        assert ensure_utc(booking.completed_at) == SESSION_START + timedelta(hours=1)
        assert {slot.status for slot in booking.calendar_slots} == {"completed"}
        hold = hold_service.get_hold(result.hold_id)
        assert (hold.status, hold.release_reason) == ("released", "completed")
        assert entitlement_service.reconcile_balance(SUBJECT_ID, SERVICE_TYPE).is_consistent

    def test_cancel_booking_returns_units_and_frees_calendars(
        self, db, booking_service, hold_service, entitlement_service, calendar_service,
        meeting_provider, granted,
    ):
        result = booking_service.book(make_request())

        booking = booking_service.cancel_booking(
            result.booking_id, cancelled_by=STUDENT_ID, reason="exam clash"
        )

        assert booking.status == "cancelled"
        assert booking.cancellation_reason == "exam clash"
        assert _balance(entitlement_service) == (10, 0, 0, 10)
        hold = hold_service.get_hold(result.hold_id)
        assert (hold.status, hold.release_reason) == ("cancelled", "booking_cancelled")
        assert meeting_provider.cancelled == [result.meeting.meeting_id]
        assert _count(db, LedgerEntry) == 1

        rebooked = booking_service.book(make_request())
        assert rebooked.booking_id != result.booking_id

    def test_cancel_survives_meeting_provider_failure(
        self, booking_service, entitlement_service, meeting_provider, granted
    ):
        result = booking_service.book(make_request())
        meeting_provider.set_error("cancel_meeting", MeetingProviderError("timeout"))

        booking = booking_service.cancel_booking(result.booking_id)

        assert booking.status == "cancelled"
        assert _balance(entitlement_service) == (10, 0, 0, 10)

    def test_terminal_bookings_cannot_transition(self, booking_service, granted):
        result = booking_service.book(make_request())
        booking_service.cancel_booking(result.booking_id)

        with pytest.raises(BookingStateException):
            booking_service.cancel_booking(result.booking_id)
        with pytest.raises(BookingStateException):
            booking_service.complete_booking(result.booking_id)

    def test_unknown_booking(self, booking_service):
        with pytest.raises(BookingNotFoundException):
            booking_service.get_booking("01HZZZZZZZZZZZZZZZZZZZZZZZ")
        with pytest.raises(BookingNotFoundException):
            booking_service.cancel_booking("01HZZZZZZZZZZZZZZZZZZZZZZZ")


def _booked_slots(db, booking_id):
    stmt = select(CalendarSlot).where(
        CalendarSlot.booking_id == booking_id, CalendarSlot.status == "booked"
    )
    return list(db.execute(stmt).scalars())


class TestReschedule:
    def test_moves_booking_and_both_calendars(
        self, db, booking_service, hold_service, entitlement_service, meeting_provider, granted
    ):
        result = booking_service.book(make_request())
        new_start = SESSION_START + timedelta(days=1)

        booking = booking_service.reschedule_booking(
            result.booking_id, new_start, 90, rescheduled_by=STUDENT_ID
        )

        assert ensure_utc(booking.start_at) == new_start
        assert ensure_utc(booking.end_at) == new_start + timedelta(minutes=90)
        assert booking.duration_minutes == 90
        assert booking.meeting_id == result.meeting.meeting_id
        slots = _booked_slots(db, result.booking_id)
        assert {slot.subject_id for slot in slots} == {MENTOR_ID, STUDENT_ID}
        assert {ensure_utc(slot.start_at) for slot in slots} == {new_start}
        assert all(slot.duration_minutes == 90 for slot in slots)

        assert hold_service.get_hold(result.hold_id).status == "active"
        assert _balance(entitlement_service) == (10, 0, 1, 9)
        assert meeting_provider.cancelled == []

        booking_service.book(make_request(student_id="student_02"))
        booking_service.complete_booking(result.booking_id)
        assert _balance(entitlement_service) == (10, 1, 1, 8)

    def test_keeps_duration_when_only_the_start_moves(self, booking_service, granted):
        result = booking_service.book(make_request(duration_minutes=45))

        booking = booking_service.reschedule_booking(
            result.booking_id, SESSION_START + timedelta(hours=2)
        )

        assert booking.duration_minutes == 45
        assert ensure_utc(booking.end_at) == SESSION_START + timedelta(hours=2, minutes=45)

    def test_mentor_conflict_leaves_booking_in_place(self, db, booking_service, granted):
        first = booking_service.book(make_request())
        booking_service.book(
            make_request(student_id="student_02", start_at=SESSION_START + timedelta(hours=3))
        )

        with pytest.raises(TimeConflictException):
            booking_service.reschedule_booking(
                first.booking_id, SESSION_START + timedelta(hours=3)
            )

        booking = booking_service.get_booking(first.booking_id)
        assert ensure_utc(booking.start_at) == SESSION_START
        slots = _booked_slots(db, first.booking_id)
        assert len(slots) == 2
        assert {ensure_utc(slot.start_at) for slot in slots} == {SESSION_START}

    def test_student_conflict_rolls_back_the_moved_mentor_slot(
        self, db, booking_service, calendar_service, granted
    ):
        result = booking_service.book(make_request())
        calendar_service.book_slot(
            STUDENT_ID,
            "student",
            (SESSION_START + timedelta(hours=4), SESSION_START + timedelta(hours=5)),
        )

        with pytest.raises(TimeConflictException):
            booking_service.reschedule_booking(
                result.booking_id, SESSION_START + timedelta(hours=4)
            )

        slots = _booked_slots(db, result.booking_id)
        assert {slot.subject_id for slot in slots} == {MENTOR_ID, STUDENT_ID}
        assert {ensure_utc(slot.start_at) for slot in slots} == {SESSION_START}
        assert calendar_service.check_availability(
            MENTOR_ID, (SESSION_START + timedelta(hours=4), SESSION_START + timedelta(hours=5))
        )

    def test_only_confirmed_bookings_move(self, booking_service, granted):
        result = booking_service.book(make_request())

        with pytest.raises(ValidationException) as exc_info:
            booking_service.reschedule_booking(result.booking_id, SESSION_START, 10)
        assert exc_info.value.code == "INVALID_DURATION"

        booking_service.cancel_booking(result.booking_id)
        with pytest.raises(BookingStateException):
            booking_service.reschedule_booking(
                result.booking_id, SESSION_START + timedelta(days=1)
            )
