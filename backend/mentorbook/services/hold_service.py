# backend/mentorbook/services/hold_service.py
"""
Hold Service for the MentorBook entitlement core.

A hold reserves entitlement units while a booking is in flight. Creating a
hold moves units from ``available`` to ``held``; releasing, cancelling or
expiring it moves them back. Each transition happens once: the hold row is
flipped with a compare-and-set on ``status = 'active'`` before the balance is
credited, so a second release (or a release racing the reaper) never credits
twice.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, Dict, List, Optional, TypedDict

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    BalanceInvariantViolation,
    DomainException,
    EntitlementNotFoundException,
    HoldAlreadyTerminalException,
    HoldBoundToBookingException,
    HoldExpiredException,
    HoldNotFoundException,
    InsufficientBalanceException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, expiry_from_ttl, utc_now
from ..models.hold import HoldReleaseReason, HoldStatus, ServiceHold
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.entitlement_repository import EntitlementRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.hold_repository import HoldRepository
from .base import BaseService

logger = logging.getLogger(__name__)

# Sentinel: "use the configured TTL". Passing ttl=None disables expiry.
DEFAULT_TTL: Any = object()


class ExpireHoldsResult(TypedDict):
    processed: int
    expired: int
    skipped: int
    failed: int
    run_at: str


class HoldService(BaseService):
    """Create, release, cancel and expire entitlement holds."""

    def __init__(
        self,
        db: Session,
        hold_repository: Optional[HoldRepository] = None,
        entitlement_repository: Optional[EntitlementRepository] = None,
        default_ttl: Optional[timedelta] = None,
    ):
        super().__init__(db)
        self.hold_repository = hold_repository or RepositoryFactory.create_hold_repository(db)
        self.entitlement_repository = (
            entitlement_repository or RepositoryFactory.create_entitlement_repository(db)
        )
        self.default_ttl = default_ttl or timedelta(minutes=settings.hold_default_ttl_minutes)

    # Queries

    def get_hold(self, hold_id: str) -> ServiceHold:
        hold = self.hold_repository.get_hold(hold_id, fresh=True)
        if hold is None:
            raise HoldNotFoundException(hold_id)
        return hold

    def get_active_holds(
        self, subject_id: str, service_type: Optional[str] = None
    ) -> List[ServiceHold]:
        return self.hold_repository.list_active(subject_id, service_type)

    # Mutations

    @BaseService.measure_operation("create_hold")
    def create_hold(
        self,
        subject_id: str,
        service_type: str,
        quantity: int = 1,
        ttl: Any = DEFAULT_TTL,
        *,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
        use_transaction: bool = True,
    ) -> ServiceHold:
        """
        Reserve ``quantity`` units of an entitlement.

        Args:
            ttl: timedelta until the reaper may expire the hold; None for a
                manual-release-only hold; omitted for the configured default.

        Raises:
            InsufficientBalanceException: fewer than ``quantity`` units available.
            EntitlementNotFoundException: no balance for the pair.
        """
        if quantity <= 0:
            raise ValidationException("Hold quantity must be positive", code="INVALID_QUANTITY")
        if ttl is DEFAULT_TTL:
            ttl = self.default_ttl
        if ttl is not None and ttl <= timedelta(0):
            raise ValidationException("Hold TTL must be positive", code="INVALID_TTL")

        expires_at = expiry_from_ttl(ttl, now)

        def _create() -> ServiceHold:
            balance = self.entitlement_repository.get_balance(
                subject_id, service_type, for_update=True
            )
            if balance is None:
                raise EntitlementNotFoundException(subject_id, service_type)
            if balance.available_quantity < quantity:
                raise InsufficientBalanceException(
                    subject_id, service_type, quantity, balance.available_quantity
                )

            updated = self.entitlement_repository.apply_delta(balance.id, held=quantity)
            if updated is None:
                current = self.entitlement_repository.reload(balance.id)
                raise InsufficientBalanceException(
                    subject_id, service_type, quantity, current.available_quantity
                )

            hold = self.hold_repository.create(
                subject_id=subject_id,
                service_type=service_type,
                quantity=quantity,
                status=HoldStatus.ACTIVE.value,
                expires_at=expires_at,
                created_by=created_by,
            )
            return hold

        with self.optional_transaction(use_transaction):
            hold = _create()

        prometheus_metrics.record_hold_created(service_type)
        self.log_operation(
            "create_hold",
            hold_id=hold.id,
            subject_id=subject_id,
            service_type=service_type,
            quantity=quantity,
            expires_at=expires_at.isoformat() if expires_at else None,
        )
        return hold

    @BaseService.measure_operation("release_hold")
    def release_hold(
        self,
        hold_id: str,
        reason: str = HoldReleaseReason.MANUAL.value,
        *,
        now: Optional[datetime] = None,
        use_transaction: bool = True,
        booking_id: Optional[str] = None,
    ) -> ServiceHold:
        """
        Release an active hold and return its units to ``available``.

        A hold attached to a booking can only be ended by that booking's
        cancellation, which passes its ``booking_id``.

        Raises:
            HoldExpiredException: the reaper already expired it.
            HoldBoundToBookingException: it backs a booking other than ``booking_id``.
            HoldAlreadyTerminalException: it was released or cancelled before.
        """
        return self._terminate(
            hold_id,
            HoldStatus.RELEASED.value,
            reason,
            now=now,
            use_transaction=use_transaction,
            booking_id=booking_id,
        )

    @BaseService.measure_operation("cancel_hold")
    def cancel_hold(
        self,
        hold_id: str,
        reason: str = HoldReleaseReason.CANCELLED.value,
        *,
        now: Optional[datetime] = None,
        use_transaction: bool = True,
        booking_id: Optional[str] = None,
    ) -> ServiceHold:
        """Cancel an active hold; same accounting as release, different terminal status."""
        return self._terminate(
            hold_id,
            HoldStatus.CANCELLED.value,
            reason,
            now=now,
            use_transaction=use_transaction,
            booking_id=booking_id,
        )

    def finalize_hold(
        self,
        hold_id: str,
        status: str,
        reason: Optional[str],
        *,
        now: Optional[datetime] = None,
        booking_id: Optional[str] = None,
    ) -> ServiceHold:
        """
        Flip an active hold to a terminal status without touching the balance.

        Callers are responsible for the matching balance movement in the same
        transaction (release credits ``available``; consumption moves the units
        to ``consumed``). A hold attached to a booking only flips when
        ``booking_id`` names that booking.
        """
        at = ensure_utc(now) or utc_now()
        if self.hold_repository.get_hold(hold_id) is None:
            raise HoldNotFoundException(hold_id)

        if not self.hold_repository.transition_if_active(
            hold_id, status, reason=reason, at=at, booking_id=booking_id
        ):
            current = self.hold_repository.get_hold(hold_id, fresh=True)
            if current is None:
                raise HoldNotFoundException(hold_id)
            if current.status == HoldStatus.EXPIRED.value:
                raise HoldExpiredException(hold_id)
            if current.is_terminal:
                raise HoldAlreadyTerminalException(hold_id, current.status)
            raise HoldBoundToBookingException(hold_id, current.booking_id, current.status)

        hold = self.hold_repository.get_hold(hold_id, fresh=True)
        prometheus_metrics.record_hold_transition(status, reason)
        return hold

    def attach_to_booking(self, hold: ServiceHold, booking_id: str) -> ServiceHold:
        """
        Bind an active hold to a booking and clear its TTL.

        From here on the hold lives as long as the booking: completion converts
        it to consumption, cancellation cancels it.
        """
        if not self.hold_repository.attach_to_booking(hold.id, booking_id):
            current = self.hold_repository.get_hold(hold.id, fresh=True)
            if current is not None and current.status == HoldStatus.EXPIRED.value:
                raise HoldExpiredException(hold.id)
            raise HoldAlreadyTerminalException(hold.id, current.status if current else "unknown")
        return self.hold_repository.get_hold(hold.id, fresh=True)

    def require_adoptable(
        self,
        hold_id: str,
        subject_id: str,
        service_type: str,
        quantity: int,
        *,
        now: Optional[datetime] = None,
    ) -> ServiceHold:
        """Check a caller-supplied hold can back a new booking."""
        at = ensure_utc(now) or utc_now()
        hold = self.get_hold(hold_id)
        if hold.status == HoldStatus.EXPIRED.value or (hold.is_active and hold.is_past_expiry(at)):
            raise HoldExpiredException(hold_id, hold.status)
        if hold.is_terminal:
            raise HoldAlreadyTerminalException(hold_id, hold.status)
        if hold.booking_id is not None:
            raise HoldBoundToBookingException(hold_id, hold.booking_id, hold.status)
        if (
            hold.subject_id != subject_id
            or hold.service_type != service_type
            or hold.quantity != quantity
        ):
            raise ValidationException(
                "Hold does not match the booking request",
                code="HOLD_MISMATCH",
                details={
                    "hold_id": hold_id,
                    "hold": [hold.subject_id, hold.service_type, hold.quantity],
                    "requested": [subject_id, service_type, quantity],
                },
            )
        return hold

    @BaseService.measure_operation("expire_holds")
    def expire_holds(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ExpireHoldsResult:
        """
        Hold Reaper: expire active holds whose TTL elapsed.

        Every hold is expired in its own transaction, so a failure on one
        leaves the already-processed ones committed.
        """
        at = ensure_utc(now) or utc_now()
        limit = batch_size or settings.hold_reaper_batch_size
        hold_ids = self.hold_repository.find_expired_ids(at, limit)

        results: ExpireHoldsResult = {
            "processed": 0,
            "expired": 0,
            "skipped": 0,
            "failed": 0,
            "run_at": at.isoformat(),
        }

        for hold_id in hold_ids:
            results["processed"] += 1
            try:
                with self.transaction():
                    expired = self._expire_one(hold_id, at)
            except DomainException as exc:
                results["failed"] += 1
                self.logger.error(
                    "Failed to expire hold",
                    extra={"hold_id": hold_id, "error": str(exc)},
                )
                continue

            if expired:
                results["expired"] += 1
            else:
                # Released or re-scheduled between the scan and the update
                results["skipped"] += 1

        if hold_ids:
            self.log_operation("expire_holds", **results)
        return results

    # Internals

    def _terminate(
        self,
        hold_id: str,
        status: str,
        reason: Optional[str],
        *,
        now: Optional[datetime],
        use_transaction: bool,
        booking_id: Optional[str] = None,
    ) -> ServiceHold:
        with self.optional_transaction(use_transaction):
            hold = self.finalize_hold(hold_id, status, reason, now=now, booking_id=booking_id)
            self._credit_back(hold)

        self.log_operation(
            f"{status}_hold",
            hold_id=hold.id,
            subject_id=hold.subject_id,
            service_type=hold.service_type,
            quantity=hold.quantity,
            reason=reason,
        )
        return hold

    def _expire_one(self, hold_id: str, at: datetime) -> bool:
        transitioned = self.hold_repository.transition_if_active(
            hold_id,
            HoldStatus.EXPIRED.value,
            reason=HoldReleaseReason.EXPIRED.value,
            at=at,
            expired_before=at,
        )
        if not transitioned:
            return False
        hold = self.hold_repository.get_hold(hold_id, fresh=True)
        self._credit_back(hold)
        prometheus_metrics.record_hold_transition(
            HoldStatus.EXPIRED.value, HoldReleaseReason.EXPIRED.value
        )
        return True

    def _credit_back(self, hold: ServiceHold) -> None:
        """Move a terminated hold's units from ``held`` back to ``available``."""
        balance = self.entitlement_repository.get_balance(hold.subject_id, hold.service_type)
        updated = (
            self.entitlement_repository.apply_delta(balance.id, held=-hold.quantity)
            if balance is not None
            else None
        )
        if updated is None:
            raise BalanceInvariantViolation(
                f"Active hold {hold.id} is not covered by its balance's held quantity",
                details=self._hold_context(hold),
            )

    @staticmethod
    def _hold_context(hold: ServiceHold) -> Dict[str, Any]:
        return {
            "hold_id": hold.id,
            "subject_id": hold.subject_id,
            "service_type": hold.service_type,
            "quantity": hold.quantity,
        }
