# backend/mentorbook/repositories/calendar_repository.py
"""
Calendar slot repository.

``insert_booked_slot`` lets IntegrityError propagate; the overlap constraint
fires there and CalendarService maps it to TimeConflictException.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..models.calendar_slot import CalendarSlot, SlotStatus
from .base_repository import BaseRepository


class CalendarRepository(BaseRepository[CalendarSlot]):
    """Data access for CalendarSlot rows."""

    def __init__(self, db: Session):
        super().__init__(db, CalendarSlot)

    def insert_booked_slot(
        self,
        *,
        subject_id: str,
        subject_role: str,
        start_at: datetime,
        end_at: datetime,
        duration_minutes: int,
        booking_id: Optional[str] = None,
        meeting_id: Optional[str] = None,
        title: Optional[str] = None,
        session_type: Optional[str] = None,
    ) -> CalendarSlot:
        slot = CalendarSlot(
            subject_id=subject_id,
            subject_role=subject_role,
            start_at=start_at,
            end_at=end_at,
            duration_minutes=duration_minutes,
            status=SlotStatus.BOOKED.value,
            booking_id=booking_id,
            meeting_id=meeting_id,
            title=title,
            session_type=session_type,
        )
        self.db.add(slot)
        self.db.flush()
        return slot

    def find_overlapping(
        self,
        subject_id: str,
        start_at: datetime,
        end_at: datetime,
    ) -> List[CalendarSlot]:
        """Booked slots for ``subject_id`` intersecting ``[start_at, end_at)``."""
        stmt = (
            select(CalendarSlot)
            .where(
                CalendarSlot.subject_id == subject_id,
                CalendarSlot.status == SlotStatus.BOOKED.value,
                CalendarSlot.start_at < end_at,
                CalendarSlot.end_at > start_at,
            )
            .order_by(CalendarSlot.start_at)
        )
        return list(self.db.execute(stmt).scalars())

    def list_booked(
        self,
        subject_id: str,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
    ) -> List[CalendarSlot]:
        stmt = select(CalendarSlot).where(
            CalendarSlot.subject_id == subject_id,
            CalendarSlot.status == SlotStatus.BOOKED.value,
        )
        if start_at is not None:
            stmt = stmt.where(CalendarSlot.end_at > start_at)
        if end_at is not None:
            stmt = stmt.where(CalendarSlot.start_at < end_at)
        return list(self.db.execute(stmt.order_by(CalendarSlot.start_at)).scalars())

    def list_for_booking(self, booking_id: str) -> List[CalendarSlot]:
        stmt = select(CalendarSlot).where(CalendarSlot.booking_id == booking_id)
        return list(self.db.execute(stmt.order_by(CalendarSlot.subject_role)).scalars())
