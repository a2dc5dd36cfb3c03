# backend/mentorbook/repositories/hold_repository.py
"""
Service hold repository.

Status changes use a compare-and-set UPDATE guarded by ``status = 'active'``
so a hold leaves the active state exactly once even when a user release and
the reaper race each other.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ..models.hold import HoldStatus, ServiceHold
from .base_repository import BaseRepository


class HoldRepository(BaseRepository[ServiceHold]):
    """Data access for ServiceHold rows."""

    def __init__(self, db: Session):
        super().__init__(db, ServiceHold)

    def get_hold(self, hold_id: str, *, fresh: bool = False) -> Optional[ServiceHold]:
        stmt = select(ServiceHold).where(ServiceHold.id == hold_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def transition_if_active(
        self,
        hold_id: str,
        new_status: str,
        *,
        reason: Optional[str],
        at: datetime,
        expired_before: Optional[datetime] = None,
        booking_id: Optional[str] = None,
    ) -> bool:
        """
        Move an active hold to ``new_status``.

        A hold attached to a booking only moves when ``booking_id`` names that
        booking; unattached holds move for any caller.

        When ``expired_before`` is given the hold must also carry an expiry
        earlier than it, which keeps the reaper from expiring a hold whose TTL
        was cleared after it was selected.

        Returns:
            True if this call performed the transition.
        """
        stmt = update(ServiceHold).where(
            ServiceHold.id == hold_id,
            ServiceHold.status == HoldStatus.ACTIVE.value,
        )
        if booking_id is None:
            stmt = stmt.where(ServiceHold.booking_id.is_(None))
        else:
            stmt = stmt.where(
                or_(ServiceHold.booking_id.is_(None), ServiceHold.booking_id == booking_id)
            )
        if expired_before is not None:
            stmt = stmt.where(
                ServiceHold.expires_at.is_not(None),
                ServiceHold.expires_at < expired_before,
            )
        stmt = stmt.values(
            status=new_status,
            released_at=at,
            release_reason=reason,
        ).execution_options(synchronize_session=False)
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def attach_to_booking(self, hold_id: str, booking_id: str) -> bool:
        """Link an active hold to its booking and drop its TTL."""
        stmt = (
            update(ServiceHold)
            .where(
                ServiceHold.id == hold_id,
                ServiceHold.status == HoldStatus.ACTIVE.value,
            )
            .values(booking_id=booking_id, expires_at=None)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def find_expired_ids(self, now: datetime, limit: int) -> List[str]:
        """
        Ids of active holds whose TTL elapsed, oldest first.

        On PostgreSQL rows locked by another reaper are skipped.
        """
        stmt = (
            select(ServiceHold.id)
            .where(
                ServiceHold.status == HoldStatus.ACTIVE.value,
                ServiceHold.expires_at.is_not(None),
                ServiceHold.expires_at < now,
            )
            .order_by(ServiceHold.expires_at)
            .limit(limit)
        )
        stmt = self.lock_rows(stmt, skip_locked=True)
        return list(self.db.execute(stmt).scalars())

    def list_active(
        self, subject_id: str, service_type: Optional[str] = None
    ) -> List[ServiceHold]:
        stmt = select(ServiceHold).where(
            ServiceHold.subject_id == subject_id,
            ServiceHold.status == HoldStatus.ACTIVE.value,
        )
        if service_type:
            stmt = stmt.where(ServiceHold.service_type == service_type)
        return list(self.db.execute(stmt.order_by(ServiceHold.created_at)).scalars())

    def sum_active_quantity(self, subject_id: str, service_type: str) -> int:
        stmt = select(func.coalesce(func.sum(ServiceHold.quantity), 0)).where(
            ServiceHold.subject_id == subject_id,
            ServiceHold.service_type == service_type,
            ServiceHold.status == HoldStatus.ACTIVE.value,
        )
        return int(self.db.execute(stmt).scalar_one())
