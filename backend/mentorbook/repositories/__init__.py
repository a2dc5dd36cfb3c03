# backend/mentorbook/repositories/__init__.py
"""
Repository Pattern Implementation for the MentorBook entitlement core

This package provides the repository layer for data access,
separating business logic from database queries.

Key Components:
- BaseRepository: Foundation for all repositories with generic CRUD operations
- IRepository: Interface defining required methods for all repositories
- RepositoryFactory: Factory for creating repository instances
- EntitlementRepository: Guarded relative updates on balance rows
- LedgerRepository: Append-only ledger inserts and queries
- LedgerArchiveRepository: Cold-storage copies of old ledger entries
- ArchivePolicyRepository: Per-subject, per-service-type and global archive policies
- HoldRepository: Compare-and-set hold transitions and reaper scans
- CalendarRepository: Booked slot inserts and overlap queries
- BookingRepository: Booking records with their calendar slots

Usage:
    from mentorbook.repositories import RepositoryFactory

    repository = RepositoryFactory.create_hold_repository(db)
    holds = repository.list_active(subject_id, "session")
"""

from .base_repository import BaseRepository, IRepository
from .booking_repository import BookingRepository
from .calendar_repository import CalendarRepository
from .entitlement_repository import EntitlementRepository
from .factory import RepositoryFactory
from .hold_repository import HoldRepository
from .ledger_archive_repository import ArchivePolicyRepository, LedgerArchiveRepository
from .ledger_repository import LedgerRepository

__all__ = [
    "ArchivePolicyRepository",
    "BaseRepository",
    "BookingRepository",
    "CalendarRepository",
    "EntitlementRepository",
    "HoldRepository",
    "IRepository",
    "LedgerArchiveRepository",
    "LedgerRepository",
    "RepositoryFactory",
]
