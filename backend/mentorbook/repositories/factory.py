# backend/mentorbook/repositories/factory.py
"""
Repository Factory for the MentorBook entitlement core

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from .base_repository import BaseRepository

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .calendar_repository import CalendarRepository
    from .entitlement_repository import EntitlementRepository
    from .hold_repository import HoldRepository
    from .ledger_archive_repository import ArchivePolicyRepository, LedgerArchiveRepository
    from .ledger_repository import LedgerRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations if needed.
    """

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        """Create a generic base repository for any model."""
        return BaseRepository(db, model)

    @staticmethod
    def create_entitlement_repository(db: Session) -> "EntitlementRepository":
        """Create repository for entitlement balances."""
        from .entitlement_repository import EntitlementRepository

        return EntitlementRepository(db)

    @staticmethod
    def create_ledger_repository(db: Session) -> "LedgerRepository":
        """Create repository for ledger entries."""
        from .ledger_repository import LedgerRepository

        return LedgerRepository(db)

    @staticmethod
    def create_hold_repository(db: Session) -> "HoldRepository":
        """Create repository for service holds."""
        from .hold_repository import HoldRepository

        return HoldRepository(db)

    @staticmethod
    def create_calendar_repository(db: Session) -> "CalendarRepository":
        """Create repository for calendar slots."""
        from .calendar_repository import CalendarRepository

        return CalendarRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for bookings."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_ledger_archive_repository(db: Session) -> "LedgerArchiveRepository":
        """Create repository for archived ledger entries."""
        from .ledger_archive_repository import LedgerArchiveRepository

        return LedgerArchiveRepository(db)

    @staticmethod
    def create_archive_policy_repository(db: Session) -> "ArchivePolicyRepository":
        """Create repository for ledger archive policies."""
        from .ledger_archive_repository import ArchivePolicyRepository

        return ArchivePolicyRepository(db)
