# backend/mentorbook/models/entitlement.py
"""
Entitlement balance and ledger models.

An EntitlementBalance is the per (subject, service_type) aggregate of what a
contract granted and what has been spent or reserved against it. Every change
to ``total_quantity`` or ``consumed_quantity`` is paired with exactly one
LedgerEntry written in the same transaction; ``held_quantity`` moves only with
hold transitions (see models/hold.py).

The arithmetic invariant is enforced by CHECK constraints so that a buggy
write fails at flush time instead of persisting a corrupt balance.
"""

from enum import Enum
import logging
from typing import Any, Dict

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.sql import func
import ulid

from ..core.exceptions import LedgerImmutableError
from ..database import Base

logger = logging.getLogger(__name__)


class LedgerEntryType(str, Enum):
    """Kinds of entitlement-affecting events."""

    INITIAL = "initial"  # contract grant (+)
    CONSUMPTION = "consumption"  # service delivered (-)
    REFUND = "refund"  # consumed units returned (+)
    ADJUSTMENT = "adjustment"  # manual correction (+/-)
    EXPIRATION = "expiration"  # validity lapsed (-)


class LedgerSource(str, Enum):
    """Why a ledger entry was written."""

    CONTRACT_GRANT = "contract_grant"
    BOOKING_COMPLETED = "booking_completed"
    DIRECT_CONSUMPTION = "direct_consumption"
    BOOKING_REFUND = "booking_refund"
    MANUAL_ADJUSTMENT = "manual_adjustment"
    VALIDITY_EXPIRED = "validity_expired"


class EntitlementBalance(Base):
    """Mutable balance for one subject/service pair."""

    __tablename__ = "entitlement_balances"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    subject_id = Column(String(64), nullable=False, index=True)
    service_type = Column(String(50), nullable=False)

    total_quantity = Column(Integer, nullable=False, default=0)
    consumed_quantity = Column(Integer, nullable=False, default=0)
    held_quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)

    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "service_type", name="uq_entitlement_subject_service"),
        CheckConstraint(
            "total_quantity >= 0 AND consumed_quantity >= 0 "
            "AND held_quantity >= 0 AND available_quantity >= 0",
            name="ck_entitlement_quantities_non_negative",
        ),
        CheckConstraint(
            "available_quantity = total_quantity - consumed_quantity - held_quantity",
            name="ck_entitlement_available_derived",
        ),
        Index("ix_entitlement_balances_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EntitlementBalance {self.subject_id}/{self.service_type} "
            f"total={self.total_quantity} consumed={self.consumed_quantity} "
            f"held={self.held_quantity} available={self.available_quantity}>"
        )

    def is_consistent(self) -> bool:
        """Whether the in-memory quantities satisfy the balance invariant."""
        quantities = (
            self.total_quantity,
            self.consumed_quantity,
            self.held_quantity,
            self.available_quantity,
        )
        if any(q is None or q < 0 for q in quantities):
            return False
        return (
            self.available_quantity
            == self.total_quantity - self.consumed_quantity - self.held_quantity
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "service_type": self.service_type,
            "total": self.total_quantity,
            "consumed": self.consumed_quantity,
            "held": self.held_quantity,
            "available": self.available_quantity,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


class LedgerEntry(Base):
    """Append-only record of an entitlement-affecting event."""

    __tablename__ = "service_ledger_entries"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    subject_id = Column(String(64), nullable=False)
    service_type = Column(String(50), nullable=False)

    quantity = Column(Integer, nullable=False)
    entry_type = Column(String(20), nullable=False)
    source = Column(String(50), nullable=False)
    balance_after = Column(Integer, nullable=False)

    hold_id = Column(String(26), nullable=True, index=True)
    booking_id = Column(String(26), nullable=True, index=True)
    reason = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        CheckConstraint(
            "(entry_type IN ('initial', 'refund') AND quantity > 0) "
            "OR (entry_type IN ('consumption', 'expiration') AND quantity < 0) "
            "OR (entry_type = 'adjustment' AND quantity <> 0)",
            name="ck_ledger_quantity_sign",
        ),
        CheckConstraint(
            "entry_type <> 'adjustment' OR (reason IS NOT NULL AND length(trim(reason)) > 0)",
            name="ck_ledger_adjustment_reason",
        ),
        Index("ix_ledger_subject_service_created", "subject_id", "service_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.entry_type} {self.quantity:+d} "
            f"{self.subject_id}/{self.service_type} after={self.balance_after}>"
        )


@event.listens_for(LedgerEntry, "before_update")
def _reject_ledger_update(_mapper: Any, _connection: Any, target: LedgerEntry) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only and cannot be updated")


@event.listens_for(LedgerEntry, "before_delete")
def _reject_ledger_delete(_mapper: Any, _connection: Any, target: LedgerEntry) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.id} is append-only and cannot be deleted")
