"""Pydantic schemas for the entitlement core."""

from .booking import BookingRequest, BookingResult, CalendarSlotRead, MeetingInfo, TimeInterval
from .entitlement import BalanceReconciliation, EntitlementSnapshot, LedgerEntryRead

__all__ = [
    "BalanceReconciliation",
    "BookingRequest",
    "BookingResult",
    "CalendarSlotRead",
    "EntitlementSnapshot",
    "LedgerEntryRead",
    "MeetingInfo",
    "TimeInterval",
]
