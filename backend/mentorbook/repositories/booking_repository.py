# backend/mentorbook/repositories/booking_repository.py
"""Booking repository."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..models.booking import Booking
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    """Data access for Booking rows."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_with_slots(self, booking_id: str, *, for_update: bool = False) -> Optional[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .options(selectinload(Booking.calendar_slots))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = self.lock_rows(stmt, of=Booking)
        return self.db.execute(stmt).scalar_one_or_none()
