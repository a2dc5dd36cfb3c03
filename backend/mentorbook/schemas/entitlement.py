# backend/mentorbook/schemas/entitlement.py
"""Entitlement and ledger schemas."""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from pydantic import Field

from .base import StandardizedModel

if TYPE_CHECKING:
    from ..models.entitlement import EntitlementBalance


class EntitlementSnapshot(StandardizedModel):
    """Point-in-time view of a balance (the entitlement lookup contract)."""

    subject_id: str
    service_type: str
    total: int = Field(..., ge=0)
    consumed: int = Field(..., ge=0)
    held: int = Field(..., ge=0)
    available: int = Field(..., ge=0)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_balance(cls, balance: "EntitlementBalance") -> "EntitlementSnapshot":
        return cls(
            subject_id=balance.subject_id,
            service_type=balance.service_type,
            total=balance.total_quantity,
            consumed=balance.consumed_quantity,
            held=balance.held_quantity,
            available=balance.available_quantity,
            expires_at=balance.expires_at,
        )


class LedgerEntryRead(StandardizedModel):
    id: str
    subject_id: str
    service_type: str
    quantity: int
    entry_type: str
    source: str
    balance_after: int
    hold_id: Optional[str] = None
    booking_id: Optional[str] = None
    reason: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    archived: bool = False


class BalanceReconciliation(StandardizedModel):
    """
    Balance recomputed from the ledger and active holds, next to the stored row.

    ``expected_*`` values come from summing ledger entries by type and active
    hold quantities; ``discrepancies`` lists every field that disagrees.
    """

    subject_id: str
    service_type: str
    stored: EntitlementSnapshot
    expected_total: int
    expected_consumed: int
    expected_held: int
    expected_available: int
    discrepancies: List[str] = Field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies
