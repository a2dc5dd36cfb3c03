"""Calendar exclusion: half-open intervals, one booked slot per person per instant."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import MENTOR_ID, SESSION_START, STUDENT_ID, hours
from mentorbook.core.exceptions import (
    ConflictException,
    NotFoundException,
    TimeConflictException,
    ValidationException,
)
from mentorbook.core.timezone_utils import ensure_utc
from mentorbook.models.calendar_slot import CalendarSlot
from mentorbook.schemas.booking import TimeInterval


def _window(offset_minutes: int = 0, minutes: int = 60) -> TimeInterval:
    return TimeInterval.starting_at(SESSION_START + timedelta(minutes=offset_minutes), minutes)


class TestBookSlot:
    def test_book_slot(self, calendar_service):
        slot = calendar_service.book_slot(
            MENTOR_ID, "mentor", _window(), title="Essay review", session_type="mentoring"
        )
        assert slot.status == "booked"
        assert slot.duration_minutes == 60
        assert slot.subject_role == "mentor"

    def test_back_to_back_slots_do_not_conflict(self, calendar_service):
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(0))
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(60))
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(-60))

        assert len(calendar_service.get_booked_slots(MENTOR_ID)) == 3

    @pytest.mark.parametrize(
        "offset,minutes",
        [(0, 60), (30, 60), (-30, 60), (15, 30), (-30, 120)],
    )
    def test_overlap_is_rejected_at_insert(self, calendar_service, offset, minutes):
        calendar_service.book_slot(MENTOR_ID, "mentor", _window())

        with pytest.raises(TimeConflictException) as exc_info:
            calendar_service.book_slot(MENTOR_ID, "mentor", _window(offset, minutes))

        assert exc_info.value.code == "TIME_CONFLICT"
        assert exc_info.value.details["stage"] == "insert"
        assert exc_info.value.details["conflict_scope"] == "mentor"
        assert len(calendar_service.get_booked_slots(MENTOR_ID)) == 1

    def test_different_people_may_share_an_interval(self, calendar_service):
        calendar_service.book_slot(MENTOR_ID, "mentor", _window())
        calendar_service.book_slot(STUDENT_ID, "student", _window())
        calendar_service.book_slot("mentor_02", "counselor", _window())

    def test_accepts_plain_tuples(self, calendar_service):
        slot = calendar_service.book_slot(
            MENTOR_ID, "mentor", (SESSION_START, SESSION_START + hours(1.5))
        )
        assert slot.duration_minutes == 90

    def test_rejects_bad_input(self, calendar_service):
        with pytest.raises(ValidationException) as exc_info:
            calendar_service.book_slot(MENTOR_ID, "mentor", (SESSION_START, SESSION_START))
        assert exc_info.value.code == "INVALID_INTERVAL"

        with pytest.raises(ValidationException) as exc_info:
            calendar_service.book_slot(MENTOR_ID, "admin", _window())
        assert exc_info.value.code == "INVALID_ROLE"

    def test_rejects_sub_minute_interval(self, calendar_service):
        with pytest.raises(ValidationException) as exc_info:
            calendar_service.book_slot(
                MENTOR_ID,
                "mentor",
                (SESSION_START, SESSION_START + timedelta(seconds=30)),
            )
        assert exc_info.value.code == "INVALID_INTERVAL"
        assert calendar_service.get_booked_slots(MENTOR_ID) == []


class TestAvailability:
    def test_precheck_reports_conflicting_slots(self, calendar_service):
        booked = calendar_service.book_slot(MENTOR_ID, "mentor", _window())

        assert not calendar_service.check_availability(MENTOR_ID, _window(30))
        assert calendar_service.check_availability(MENTOR_ID, _window(60))

        with pytest.raises(TimeConflictException) as exc_info:
            calendar_service.ensure_available(MENTOR_ID, _window(30), role="mentor")
        assert exc_info.value.details["stage"] == "precheck"
        assert exc_info.value.details["conflicting_slot_ids"] == [booked.id]

    def test_booked_slots_window(self, calendar_service):
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(0))
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(180))

        slots = calendar_service.get_booked_slots(
            MENTOR_ID, SESSION_START + hours(2), SESSION_START + hours(5)
        )
        assert len(slots) == 1


class TestRelease:
    def test_release_frees_interval(self, calendar_service):
        slot = calendar_service.book_slot(MENTOR_ID, "mentor", _window())

        released = calendar_service.release_slot(slot.id, reason="student cancelled")

        assert released.status == "cancelled"
        assert released.reason == "student cancelled"
        assert calendar_service.check_availability(MENTOR_ID, _window())
        calendar_service.book_slot(MENTOR_ID, "mentor", _window())

    def test_completed_slot_no_longer_blocks(self, calendar_service):
        slot = calendar_service.book_slot(MENTOR_ID, "mentor", _window())
        assert calendar_service.complete_slot(slot.id).status == "completed"
        assert calendar_service.check_availability(MENTOR_ID, _window())

    def test_release_twice(self, calendar_service):
        slot = calendar_service.book_slot(MENTOR_ID, "mentor", _window())
        calendar_service.release_slot(slot.id)

        with pytest.raises(ConflictException) as exc_info:
            calendar_service.release_slot(slot.id)
        assert exc_info.value.code == "SLOT_NOT_BOOKED"

    def test_unknown_slot(self, calendar_service):
        with pytest.raises(NotFoundException):
            calendar_service.release_slot("01HZZZZZZZZZZZZZZZZZZZZZZZ")


class TestReschedule:
    def test_moves_the_slot(self, db, calendar_service):
        old = calendar_service.book_slot(
            MENTOR_ID, "mentor", _window(), "booking_01", meeting_id="m1", title="Essay review"
        )

        new = calendar_service.reschedule_slot(old.id, _window(30))

        assert new.id != old.id
        assert ensure_utc(new.start_at) == SESSION_START + timedelta(minutes=30)
        assert (new.subject_role, new.booking_id, new.meeting_id, new.title) == (
            "mentor",
            "booking_01",
            "m1",
            "Essay review",
        )
        assert db.get(CalendarSlot, old.id).status == "cancelled"
        assert db.get(CalendarSlot, old.id).reason == "rescheduled"
        assert [slot.id for slot in calendar_service.get_booked_slots(MENTOR_ID)] == [new.id]

    def test_conflict_keeps_the_old_slot(self, db, calendar_service):
        old = calendar_service.book_slot(MENTOR_ID, "mentor", _window(0))
        taken = calendar_service.book_slot(MENTOR_ID, "mentor", _window(120))

        with pytest.raises(TimeConflictException) as exc_info:
            calendar_service.reschedule_slot(old.id, _window(90))

        assert exc_info.value.details["stage"] == "insert"
        assert db.get(CalendarSlot, old.id).status == "booked"
        booked = {slot.id for slot in calendar_service.get_booked_slots(MENTOR_ID)}
        assert booked == {old.id, taken.id}

    def test_rolls_back_with_the_enclosing_transaction(self, db, calendar_service):
        old = calendar_service.book_slot(MENTOR_ID, "mentor", _window(0))
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(120))

        with pytest.raises(TimeConflictException):
            with calendar_service.transaction():
                moved = calendar_service.reschedule_slot(
                    old.id, _window(200), use_transaction=False
                )
                calendar_service.reschedule_slot(moved.id, _window(100), use_transaction=False)

        assert db.get(CalendarSlot, old.id).status == "booked"
        assert len(calendar_service.get_booked_slots(MENTOR_ID)) == 2

    def test_only_booked_slots_move(self, calendar_service):
        slot = calendar_service.book_slot(MENTOR_ID, "mentor", _window())
        calendar_service.complete_slot(slot.id)

        with pytest.raises(ConflictException) as exc_info:
            calendar_service.reschedule_slot(slot.id, _window(60))
        assert exc_info.value.code == "SLOT_NOT_BOOKED"
        with pytest.raises(NotFoundException):
            calendar_service.reschedule_slot("01HZZZZZZZZZZZZZZZZZZZZZZZ", _window(60))


class TestDatabaseEnforcement:
    def test_moving_a_slot_onto_another_is_rejected(self, db, calendar_service):
        calendar_service.book_slot(MENTOR_ID, "mentor", _window(0))
        later = calendar_service.book_slot(MENTOR_ID, "mentor", _window(120))

        later.start_at = SESSION_START + timedelta(minutes=30)
        later.end_at = SESSION_START + timedelta(minutes=90)
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()

    def test_rebooking_a_cancelled_slot_is_rejected_when_taken(self, db, calendar_service):
        first = calendar_service.book_slot(MENTOR_ID, "mentor", _window())
        calendar_service.release_slot(first.id)
        calendar_service.book_slot(MENTOR_ID, "mentor", _window())

        first.status = "booked"
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()
