# backend/mentorbook/models/hold.py
"""
Service hold model.

A hold provisionally reserves entitlement units while a booking is in flight.
Only ``active`` holds count toward EntitlementBalance.held_quantity; every
other status is terminal and immutable.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base


class HoldStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_HOLD_STATUSES = frozenset(
    {HoldStatus.RELEASED.value, HoldStatus.CANCELLED.value, HoldStatus.EXPIRED.value}
)


class HoldReleaseReason(str, Enum):
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    BOOKING_CANCELLED = "booking_cancelled"
    MANUAL = "manual"


class ServiceHold(Base):
    """Provisional reservation of entitlement units."""

    __tablename__ = "service_holds"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    subject_id = Column(String(64), nullable=False)
    service_type = Column(String(50), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    status = Column(String(20), nullable=False, default=HoldStatus.ACTIVE.value)
    # NULL means manual release only; the reaper never touches it.
    expires_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    release_reason = Column(Text, nullable=True)

    # Plain column: bookings reference holds, so an FK here would be circular.
    booking_id = Column(String(26), nullable=True, index=True)
    created_by = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_service_holds_quantity_positive"),
        CheckConstraint(
            "status IN ('active', 'released', 'cancelled', 'expired')",
            name="ck_service_holds_status",
        ),
        Index("ix_service_holds_subject_service_status", "subject_id", "service_type", "status"),
        Index(
            "ix_service_holds_active_expiry",
            "status",
            "expires_at",
            postgresql_where=(status == HoldStatus.ACTIVE.value),
        ),
    )

    def __repr__(self) -> str:
        return f"<ServiceHold {self.id} {self.subject_id}/{self.service_type} x{self.quantity} {self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status == HoldStatus.ACTIVE.value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_HOLD_STATUSES

    def is_past_expiry(self, now: datetime) -> bool:
        """True when the hold has a TTL and it elapsed before ``now``."""
        expires_at: Optional[datetime] = ensure_utc(self.expires_at)
        return expires_at is not None and expires_at < ensure_utc(now)
