# backend/mentorbook/models/booking.py
"""
Booking model.

A booking is the committed fact that a session exists. It joins the hold that
reserved the entitlement, the calendar slots it occupies and the external
meeting room created for it.
"""

from datetime import datetime
from enum import Enum
import logging
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import utc_now
from ..database import Base

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Booking(Base):
    """Committed session between a student and a mentor or counselor."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    # Entitlement being spent (contract or student) and the participants
    subject_id = Column(String(64), nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    mentor_id = Column(String(64), nullable=False, index=True)
    service_type = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    hold_id = Column(String(26), ForeignKey("service_holds.id"), nullable=True)

    topic = Column(String(255), nullable=False)
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value, index=True)

    # External meeting room
    meeting_provider = Column(String(50), nullable=True)
    meeting_id = Column(String(255), nullable=True)
    meeting_url = Column(Text, nullable=True)
    meeting_password = Column(String(255), nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_by = Column(String(64), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    hold = relationship("ServiceHold", foreign_keys=[hold_id])
    calendar_slots = relationship(
        "CalendarSlot",
        back_populates="booking",
        order_by="CalendarSlot.subject_role",
    )

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_bookings_time_order"),
        CheckConstraint("quantity > 0", name="ck_bookings_quantity_positive"),
        CheckConstraint(
            "status IN ('confirmed', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        Index("ix_bookings_mentor_start", "mentor_id", "start_at"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.id} {self.mentor_id}<-{self.student_id} {self.start_at} {self.status}>"

    @property
    def is_confirmed(self) -> bool:
        return self.status == BookingStatus.CONFIRMED.value

    def complete(self, completed_by: Optional[str] = None, at: Optional[datetime] = None) -> None:
        """Mark the booking as completed."""
        self.status = BookingStatus.COMPLETED.value
        self.completed_at = at or utc_now()
        self.completed_by = completed_by
        logger.info(f"Booking {self.id} marked as completed")

    def cancel(
        self,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        """Cancel the booking."""
        self.status = BookingStatus.CANCELLED.value
        self.cancelled_at = at or utc_now()
        self.cancelled_by = cancelled_by
        self.cancellation_reason = reason
        logger.info(f"Booking {self.id} cancelled by {cancelled_by}")
