# backend/mentorbook/repositories/ledger_repository.py
"""Append-only ledger repository."""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import BalanceInvariantViolation
from ..models.entitlement import LedgerEntry
from .base_repository import BaseRepository

DEFAULT_PAGE_SIZE = 50


class LedgerRepository(BaseRepository[LedgerEntry]):
    """Insert and query ledger entries. There is no update or delete path."""

    def __init__(self, db: Session):
        super().__init__(db, LedgerEntry)

    def append(
        self,
        *,
        subject_id: str,
        service_type: str,
        quantity: int,
        entry_type: str,
        source: str,
        balance_after: int,
        hold_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            subject_id=subject_id,
            service_type=service_type,
            quantity=quantity,
            entry_type=entry_type,
            source=source,
            balance_after=balance_after,
            hold_id=hold_id,
            booking_id=booking_id,
            reason=reason,
            created_by=created_by,
        )
        self.db.add(entry)
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.logger.critical(
                "Ledger constraint rejected entry",
                extra={
                    "subject_id": subject_id,
                    "service_type": service_type,
                    "entry_type": entry_type,
                    "quantity": quantity,
                    "balance_after": balance_after,
                },
            )
            raise BalanceInvariantViolation(
                f"Ledger entry rejected for {subject_id}/{service_type}",
                details={"entry_type": entry_type, "quantity": quantity},
            ) from exc
        return entry

    def list_entries(
        self,
        subject_id: str,
        service_type: Optional[str] = None,
        *,
        entry_types: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> List[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.subject_id == subject_id)
        if service_type:
            stmt = stmt.where(LedgerEntry.service_type == service_type)
        if entry_types:
            stmt = stmt.where(LedgerEntry.entry_type.in_(list(entry_types)))
        if start is not None:
            stmt = stmt.where(LedgerEntry.created_at >= start)
        if end is not None:
            stmt = stmt.where(LedgerEntry.created_at < end)
        # ULIDs sort by creation time, which breaks created_at ties.
        stmt = stmt.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        return list(self.db.execute(stmt.limit(limit).offset(offset)).scalars())

    def sum_by_type(self, subject_id: str, service_type: str) -> Dict[str, int]:
        """Signed quantity totals per entry type for one balance."""
        stmt = (
            select(LedgerEntry.entry_type, func.coalesce(func.sum(LedgerEntry.quantity), 0))
            .where(
                LedgerEntry.subject_id == subject_id,
                LedgerEntry.service_type == service_type,
            )
            .group_by(LedgerEntry.entry_type)
        )
        return {entry_type: int(total) for entry_type, total in self.db.execute(stmt)}
