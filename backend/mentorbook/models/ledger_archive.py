# backend/mentorbook/models/ledger_archive.py
"""
Ledger archive models.

Entries older than their archive policy allows are copied into
``service_ledger_entries_archive`` (cold storage). The hot ledger stays
append-only, so archiving never deletes; archive rows keep the id of the
entry they copy.

Policies resolve per subject, then per service type, then globally. Without
any enabled policy the configured default applies.
"""

from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    event,
)
from sqlalchemy.sql import func
import ulid

from ..core.exceptions import LedgerImmutableError
from ..database import Base


class ArchivePolicyScope(str, Enum):
    SUBJECT = "subject"
    SERVICE_TYPE = "service_type"
    GLOBAL = "global"


class LedgerEntryArchive(Base):
    """Copy of a ledger entry moved to cold storage."""

    __tablename__ = "service_ledger_entries_archive"

    id = Column(String(26), primary_key=True)
    subject_id = Column(String(64), nullable=False)
    service_type = Column(String(50), nullable=False)

    quantity = Column(Integer, nullable=False)
    entry_type = Column(String(20), nullable=False)
    source = Column(String(50), nullable=False)
    balance_after = Column(Integer, nullable=False)

    hold_id = Column(String(26), nullable=True)
    booking_id = Column(String(26), nullable=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False)
    archived_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index(
            "ix_ledger_archive_subject_service_created",
            "subject_id",
            "service_type",
            "created_at",
        ),
    )

    archived = True

    def __repr__(self) -> str:
        return (
            f"<LedgerEntryArchive {self.entry_type} {self.quantity:+d} "
            f"{self.subject_id}/{self.service_type}>"
        )


class LedgerArchivePolicy(Base):
    """How long entries stay in the hot ledger before being archived."""

    __tablename__ = "service_ledger_archive_policies"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    scope = Column(String(20), nullable=False)
    subject_id = Column(String(64), nullable=True, index=True)
    service_type = Column(String(50), nullable=True)
    archive_after_days = Column(Integer, nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    __table_args__ = (
        CheckConstraint("archive_after_days >= 1", name="ck_archive_policy_days_positive"),
        CheckConstraint(
            "(scope = 'subject' AND subject_id IS NOT NULL AND service_type IS NULL) "
            "OR (scope = 'service_type' AND subject_id IS NULL AND service_type IS NOT NULL) "
            "OR (scope = 'global' AND subject_id IS NULL AND service_type IS NULL)",
            name="ck_archive_policy_scope",
        ),
    )

    def __repr__(self) -> str:
        key = self.subject_id or self.service_type or "*"
        return f"<LedgerArchivePolicy {self.scope}:{key} after={self.archive_after_days}d>"


@event.listens_for(LedgerEntryArchive, "before_update")
def _reject_archive_update(_mapper: Any, _connection: Any, target: LedgerEntryArchive) -> None:
    raise LedgerImmutableError(f"Archived ledger entry {target.id} cannot be updated")
