# backend/mentorbook/repositories/ledger_archive_repository.py
"""
Ledger archive and archive policy repositories.

Archiving is an ``INSERT ... SELECT`` from the hot ledger that skips entries
already copied, so a run interrupted halfway can simply be repeated.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import DateTime, insert, literal, select
from sqlalchemy.orm import Session

from ..models.entitlement import LedgerEntry
from ..models.ledger_archive import LedgerArchivePolicy, LedgerEntryArchive
from .base_repository import BaseRepository

LEDGER_COLUMNS = tuple(column.name for column in LedgerEntry.__table__.columns)


class LedgerArchiveRepository(BaseRepository[LedgerEntryArchive]):
    """Copy ledger entries into cold storage and read them back."""

    def __init__(self, db: Session):
        super().__init__(db, LedgerEntryArchive)

    def copy_batch(
        self,
        cutoff: datetime,
        *,
        archived_at: datetime,
        limit: int,
        subject_ids: Sequence[str] = (),
        service_types: Sequence[str] = (),
        exclude_subject_ids: Sequence[str] = (),
        exclude_service_types: Sequence[str] = (),
    ) -> int:
        """
        Copy up to ``limit`` entries created before ``cutoff``, oldest first.

        Returns:
            Number of entries copied by this call.
        """
        already_archived = (
            select(LedgerEntryArchive.id)
            .where(LedgerEntryArchive.id == LedgerEntry.id)
            .correlate(LedgerEntry)
            .exists()
        )
        source = select(
            *(LedgerEntry.__table__.c[name] for name in LEDGER_COLUMNS),
            literal(archived_at, DateTime(timezone=True)),
        ).where(LedgerEntry.created_at < cutoff, ~already_archived)

        if subject_ids:
            source = source.where(LedgerEntry.subject_id.in_(list(subject_ids)))
        if service_types:
            source = source.where(LedgerEntry.service_type.in_(list(service_types)))
        if exclude_subject_ids:
            source = source.where(LedgerEntry.subject_id.not_in(list(exclude_subject_ids)))
        if exclude_service_types:
            source = source.where(LedgerEntry.service_type.not_in(list(exclude_service_types)))

        source = source.order_by(LedgerEntry.created_at, LedgerEntry.id).limit(limit)
        stmt = insert(LedgerEntryArchive).from_select(
            [*LEDGER_COLUMNS, "archived_at"], source
        )
        return self.db.execute(stmt).rowcount

    def list_entries(
        self,
        subject_id: str,
        service_type: Optional[str] = None,
        *,
        entry_types: Optional[Sequence[str]] = None,
        start: datetime,
        end: datetime,
        limit: int,
    ) -> List[LedgerEntryArchive]:
        """Archived entries in ``[start, end)`` that are no longer in the hot ledger."""
        still_hot = (
            select(LedgerEntry.id)
            .where(LedgerEntry.id == LedgerEntryArchive.id)
            .correlate(LedgerEntryArchive)
            .exists()
        )
        stmt = select(LedgerEntryArchive).where(
            LedgerEntryArchive.subject_id == subject_id,
            LedgerEntryArchive.created_at >= start,
            LedgerEntryArchive.created_at < end,
            ~still_hot,
        )
        if service_type:
            stmt = stmt.where(LedgerEntryArchive.service_type == service_type)
        if entry_types:
            stmt = stmt.where(LedgerEntryArchive.entry_type.in_(list(entry_types)))
        stmt = stmt.order_by(LedgerEntryArchive.created_at.desc(), LedgerEntryArchive.id.desc())
        return list(self.db.execute(stmt.limit(limit)).scalars())


class ArchivePolicyRepository(BaseRepository[LedgerArchivePolicy]):
    """Data access for archive policies."""

    def __init__(self, db: Session):
        super().__init__(db, LedgerArchivePolicy)

    def list_enabled(self) -> List[LedgerArchivePolicy]:
        stmt = (
            select(LedgerArchivePolicy)
            .where(LedgerArchivePolicy.enabled.is_(True))
            .order_by(LedgerArchivePolicy.created_at, LedgerArchivePolicy.id)
        )
        return list(self.db.execute(stmt).scalars())

    def find_enabled(
        self,
        scope: str,
        *,
        subject_id: Optional[str] = None,
        service_type: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> Optional[LedgerArchivePolicy]:
        """The enabled policy for one scope key, if any."""
        stmt = select(LedgerArchivePolicy).where(
            LedgerArchivePolicy.scope == scope,
            LedgerArchivePolicy.enabled.is_(True),
        )
        if subject_id is not None:
            stmt = stmt.where(LedgerArchivePolicy.subject_id == subject_id)
        if service_type is not None:
            stmt = stmt.where(LedgerArchivePolicy.service_type == service_type)
        if exclude_id is not None:
            stmt = stmt.where(LedgerArchivePolicy.id != exclude_id)
        return self.db.execute(stmt.limit(1)).scalar_one_or_none()
