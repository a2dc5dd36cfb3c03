# backend/mentorbook/repositories/entitlement_repository.py
"""
Entitlement balance repository.

All quantity changes go through ``apply_delta``: a single relative
``UPDATE ... SET x = x + :dx WHERE ...`` whose WHERE clause refuses any change
that would take a quantity below zero. Two sessions racing for the last unit
therefore cannot both succeed, whatever they read beforehand.
"""

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import BalanceInvariantViolation
from ..models.entitlement import EntitlementBalance
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class EntitlementRepository(BaseRepository[EntitlementBalance]):
    """Data access for EntitlementBalance rows."""

    def __init__(self, db: Session):
        super().__init__(db, EntitlementBalance)

    def get_balance(
        self,
        subject_id: str,
        service_type: str,
        *,
        for_update: bool = False,
    ) -> Optional[EntitlementBalance]:
        """
        Load a balance, optionally taking a row lock.

        ``FOR UPDATE`` is emitted on PostgreSQL only; SQLite serializes writers
        at the database level.
        """
        stmt = select(EntitlementBalance).where(
            EntitlementBalance.subject_id == subject_id,
            EntitlementBalance.service_type == service_type,
        )
        if for_update:
            stmt = self.lock_rows(stmt)
        return self.db.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def reload(self, balance_id: str) -> EntitlementBalance:
        stmt = (
            select(EntitlementBalance)
            .where(EntitlementBalance.id == balance_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one()

    def create_balance(
        self,
        subject_id: str,
        service_type: str,
        expires_at: Optional[datetime] = None,
    ) -> EntitlementBalance:
        return self.create(
            subject_id=subject_id,
            service_type=service_type,
            total_quantity=0,
            consumed_quantity=0,
            held_quantity=0,
            available_quantity=0,
            expires_at=expires_at,
        )

    def apply_delta(
        self,
        balance_id: str,
        *,
        total: int = 0,
        consumed: int = 0,
        held: int = 0,
    ) -> Optional[EntitlementBalance]:
        """
        Atomically shift quantities on one balance row.

        ``available`` moves by ``total - consumed - held`` so the derived column
        can never drift from its inputs. Returns the refreshed balance, or None
        when the guard rejected the change (or the row does not exist).

        Raises:
            BalanceInvariantViolation: a CHECK constraint rejected the write.
        """
        available = total - consumed - held
        stmt = update(EntitlementBalance).where(EntitlementBalance.id == balance_id)

        # Guards: each decremented quantity must cover the decrement.
        if total < 0:
            stmt = stmt.where(EntitlementBalance.total_quantity >= -total)
        if consumed < 0:
            stmt = stmt.where(EntitlementBalance.consumed_quantity >= -consumed)
        if held < 0:
            stmt = stmt.where(EntitlementBalance.held_quantity >= -held)
        if available < 0:
            stmt = stmt.where(EntitlementBalance.available_quantity >= -available)

        stmt = stmt.values(
            total_quantity=EntitlementBalance.total_quantity + total,
            consumed_quantity=EntitlementBalance.consumed_quantity + consumed,
            held_quantity=EntitlementBalance.held_quantity + held,
            available_quantity=EntitlementBalance.available_quantity + available,
        ).execution_options(synchronize_session=False)

        try:
            result = self.db.execute(stmt)
        except IntegrityError as exc:
            self.logger.critical(
                "Balance invariant rejected update",
                extra={
                    "balance_id": balance_id,
                    "total": total,
                    "consumed": consumed,
                    "held": held,
                    "error": str(exc.orig),
                },
            )
            raise BalanceInvariantViolation(
                f"Balance {balance_id} update violated an invariant",
                details={"total": total, "consumed": consumed, "held": held},
            ) from exc

        if result.rowcount != 1:
            return None
        return self.reload(balance_id)

    def find_lapsed(self, now: datetime, limit: int = 500) -> List[EntitlementBalance]:
        """Balances past their validity that still have spendable units."""
        stmt = (
            select(EntitlementBalance)
            .where(
                EntitlementBalance.expires_at.is_not(None),
                EntitlementBalance.expires_at < now,
                EntitlementBalance.available_quantity > 0,
            )
            .order_by(EntitlementBalance.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())
