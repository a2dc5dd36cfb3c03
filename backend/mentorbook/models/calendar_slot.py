# backend/mentorbook/models/calendar_slot.py
"""
Calendar slot model.

One row per booked interval per person. Intervals are half-open
``[start_at, end_at)``, so back-to-back sessions do not collide.

The no-overlap rule for ``booked`` rows is owned by the database, not by the
service layer:

- PostgreSQL: ``calendar_slots_no_overlap`` exclusion constraint over
  ``(subject_id WITH =, tstzrange(start_at, end_at, '[)') WITH &&)``
  restricted to ``status = 'booked'`` (requires btree_gist).
- SQLite: BEFORE INSERT / BEFORE UPDATE triggers that abort with the same
  constraint name, which the driver reports as an IntegrityError.

Both are attached to ``metadata.create_all`` via DDL events below and are
mirrored by the Alembic migration.
"""

from enum import Enum

from sqlalchemy import (
    DDL,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base

NO_OVERLAP_CONSTRAINT = "calendar_slots_no_overlap"


class SlotStatus(str, Enum):
    BOOKED = "booked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SubjectRole(str, Enum):
    MENTOR = "mentor"
    STUDENT = "student"
    COUNSELOR = "counselor"


class CalendarSlot(Base):
    """A person's occupied time interval."""

    __tablename__ = "calendar_slots"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    subject_id = Column(String(64), nullable=False)
    subject_role = Column(String(20), nullable=False)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=SlotStatus.BOOKED.value)
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=True, index=True)
    meeting_id = Column(String(255), nullable=True)

    title = Column(String(255), nullable=True)
    session_type = Column(String(50), nullable=True)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    booking = relationship("Booking", back_populates="calendar_slots")

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_calendar_slots_time_order"),
        CheckConstraint("duration_minutes > 0", name="ck_calendar_slots_duration_positive"),
        CheckConstraint(
            "status IN ('booked', 'completed', 'cancelled')",
            name="ck_calendar_slots_status",
        ),
        CheckConstraint(
            "subject_role IN ('mentor', 'student', 'counselor')",
            name="ck_calendar_slots_subject_role",
        ),
        Index("ix_calendar_slots_subject_start", "subject_id", "start_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<CalendarSlot {self.subject_id} [{self.start_at} - {self.end_at}) {self.status}>"
        )

    @property
    def is_booked(self) -> bool:
        return self.status == SlotStatus.BOOKED.value


POSTGRES_BTREE_GIST = "CREATE EXTENSION IF NOT EXISTS btree_gist"

POSTGRES_NO_OVERLAP = f"""
ALTER TABLE calendar_slots
  ADD CONSTRAINT {NO_OVERLAP_CONSTRAINT}
  EXCLUDE USING gist (
    subject_id WITH =,
    tstzrange(start_at, end_at, '[)') WITH &&
  )
  WHERE (status = 'booked')
"""

# RAISE(ABORT, ...) surfaces as SQLITE_CONSTRAINT, i.e. an IntegrityError.
SQLITE_NO_OVERLAP_INSERT = f"""
CREATE TRIGGER IF NOT EXISTS {NO_OVERLAP_CONSTRAINT}_insert
BEFORE INSERT ON calendar_slots
WHEN NEW.status = 'booked'
BEGIN
    SELECT RAISE(ABORT, '{NO_OVERLAP_CONSTRAINT}')
    WHERE EXISTS (
        SELECT 1 FROM calendar_slots
        WHERE subject_id = NEW.subject_id
          AND status = 'booked'
          AND start_at < NEW.end_at
          AND end_at > NEW.start_at
    );
END
"""

SQLITE_NO_OVERLAP_UPDATE = f"""
CREATE TRIGGER IF NOT EXISTS {NO_OVERLAP_CONSTRAINT}_update
BEFORE UPDATE OF subject_id, start_at, end_at, status ON calendar_slots
WHEN NEW.status = 'booked'
BEGIN
    SELECT RAISE(ABORT, '{NO_OVERLAP_CONSTRAINT}')
    WHERE EXISTS (
        SELECT 1 FROM calendar_slots
        WHERE subject_id = NEW.subject_id
          AND id <> NEW.id
          AND status = 'booked'
          AND start_at < NEW.end_at
          AND end_at > NEW.start_at
    );
END
"""

event.listen(
    CalendarSlot.__table__,
    "before_create",
    DDL(POSTGRES_BTREE_GIST).execute_if(dialect="postgresql"),
)
event.listen(
    CalendarSlot.__table__,
    "after_create",
    DDL(POSTGRES_NO_OVERLAP).execute_if(dialect="postgresql"),
)
event.listen(
    CalendarSlot.__table__,
    "after_create",
    DDL(SQLITE_NO_OVERLAP_INSERT).execute_if(dialect="sqlite"),
)
event.listen(
    CalendarSlot.__table__,
    "after_create",
    DDL(SQLITE_NO_OVERLAP_UPDATE).execute_if(dialect="sqlite"),
)
