# backend/mentorbook/models/__init__.py
"""
SQLAlchemy models for the MentorBook entitlement core.

Importing this package registers every table on ``Base.metadata`` (including
the dialect-specific calendar overlap DDL) so that ``create_all`` and Alembic
see the complete schema.
"""

from .booking import Booking, BookingStatus
from .calendar_slot import NO_OVERLAP_CONSTRAINT, CalendarSlot, SlotStatus, SubjectRole
from .entitlement import EntitlementBalance, LedgerEntry, LedgerEntryType, LedgerSource
from .hold import HoldReleaseReason, HoldStatus, ServiceHold
from .ledger_archive import ArchivePolicyScope, LedgerArchivePolicy, LedgerEntryArchive

__all__ = [
    "ArchivePolicyScope",
    "Booking",
    "BookingStatus",
    "CalendarSlot",
    "EntitlementBalance",
    "HoldReleaseReason",
    "HoldStatus",
    "LedgerEntry",
    "LedgerArchivePolicy",
    "LedgerEntryArchive",
    "LedgerEntryType",
    "LedgerSource",
    "NO_OVERLAP_CONSTRAINT",
    "ServiceHold",
    "SlotStatus",
    "SubjectRole",
]
