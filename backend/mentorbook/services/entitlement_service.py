# backend/mentorbook/services/entitlement_service.py
"""
Entitlement Service for the MentorBook entitlement core.

Owns the ledger. Every operation that changes what a subject is entitled to
writes exactly one LedgerEntry and shifts the EntitlementBalance in the same
transaction:

    initial      total += q
    consumption  consumed += q           (or held -> consumed via a hold)
    refund       consumed -= q
    adjustment   total += q (signed)     reason required
    expiration   total -= q              never more than available

``balance_after`` on each entry is the balance's ``available`` once the
operation is applied.
"""

from datetime import datetime, timedelta
import logging
from typing import Any, List, Optional, Sequence, Tuple, TypedDict

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    BalanceInvariantViolation,
    BusinessRuleException,
    DomainException,
    EntitlementNotFoundException,
    InsufficientBalanceException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..models.entitlement import EntitlementBalance, LedgerEntry, LedgerEntryType, LedgerSource
from ..models.hold import HoldReleaseReason, HoldStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.entitlement_repository import EntitlementRepository
from ..repositories.factory import RepositoryFactory
from ..repositories.hold_repository import HoldRepository
from ..repositories.ledger_archive_repository import LedgerArchiveRepository
from ..repositories.ledger_repository import DEFAULT_PAGE_SIZE, LedgerRepository
from ..schemas.entitlement import BalanceReconciliation, EntitlementSnapshot, LedgerEntryRead
from .base import BaseService
from .hold_service import HoldService

logger = logging.getLogger(__name__)


class ExpireEntitlementsResult(TypedDict):
    processed: int
    expired_units: int
    failed: int
    run_at: str


def _require_positive(quantity: int) -> None:
    if quantity is None or quantity <= 0:
        raise ValidationException("Quantity must be a positive integer", code="INVALID_QUANTITY")


class EntitlementService(BaseService):
    """Ledger-backed entitlement accounting."""

    def __init__(
        self,
        db: Session,
        entitlement_repository: Optional[EntitlementRepository] = None,
        ledger_repository: Optional[LedgerRepository] = None,
        hold_repository: Optional[HoldRepository] = None,
        hold_service: Optional[HoldService] = None,
        ledger_archive_repository: Optional[LedgerArchiveRepository] = None,
    ):
        super().__init__(db)
        self.entitlement_repository = (
            entitlement_repository or RepositoryFactory.create_entitlement_repository(db)
        )
        self.ledger_repository = ledger_repository or RepositoryFactory.create_ledger_repository(db)
        self.ledger_archive_repository = (
            ledger_archive_repository or RepositoryFactory.create_ledger_archive_repository(db)
        )
        self.hold_repository = hold_repository or RepositoryFactory.create_hold_repository(db)
        self.hold_service = hold_service or HoldService(
            db,
            hold_repository=self.hold_repository,
            entitlement_repository=self.entitlement_repository,
        )

    # Reads

    def get_entitlement(self, subject_id: str, service_type: str) -> EntitlementSnapshot:
        """Current totals for a subject/service pair."""
        balance = self.entitlement_repository.get_balance(subject_id, service_type)
        if balance is None:
            raise EntitlementNotFoundException(subject_id, service_type)
        return EntitlementSnapshot.from_balance(balance)

    def list_ledger_entries(
        self,
        subject_id: str,
        service_type: Optional[str] = None,
        *,
        entry_types: Optional[Sequence[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
        include_archive: bool = False,
    ) -> List[LedgerEntryRead]:
        """
        Ledger entries, newest first.

        With ``include_archive`` entries that only survive in the archive are
        merged in; that query needs both ``start`` and ``end`` and may span at
        most ``settings.ledger_archive_max_range_days``.
        """
        if limit <= 0 or limit > 500:
            raise ValidationException("limit must be between 1 and 500", code="INVALID_LIMIT")
        if offset < 0:
            raise ValidationException("offset must not be negative", code="INVALID_OFFSET")
        fetch_limit, fetch_offset = limit, offset
        if include_archive:
            start, end = self._archive_window(start, end)
            # Both sources are paged together after the merge
            fetch_limit, fetch_offset = offset + limit, 0

        entries: List[Any] = self.ledger_repository.list_entries(
            subject_id,
            service_type,
            entry_types=entry_types,
            start=start,
            end=end,
            limit=fetch_limit,
            offset=fetch_offset,
        )
        if include_archive:
            archived = self.ledger_archive_repository.list_entries(
                subject_id,
                service_type,
                entry_types=entry_types,
                start=start,
                end=end,
                limit=fetch_limit,
            )
            entries = sorted(
                [*entries, *archived],
                key=lambda entry: (ensure_utc(entry.created_at), entry.id),
                reverse=True,
            )[offset : offset + limit]
        return [LedgerEntryRead.model_validate(entry) for entry in entries]

    def reconcile_balance(self, subject_id: str, service_type: str) -> BalanceReconciliation:
        """
        Recompute a balance from its ledger and active holds.

        A non-empty ``discrepancies`` list means the stored row drifted and is
        an operational alert, not something to auto-correct.
        """
        balance = self._get_balance(subject_id, service_type)
        sums = self.ledger_repository.sum_by_type(subject_id, service_type)

        expected_total = (
            sums.get(LedgerEntryType.INITIAL.value, 0)
            + sums.get(LedgerEntryType.ADJUSTMENT.value, 0)
            + sums.get(LedgerEntryType.EXPIRATION.value, 0)
        )
        # consumption entries are negative, refunds positive
        expected_consumed = -sums.get(LedgerEntryType.CONSUMPTION.value, 0) - sums.get(
            LedgerEntryType.REFUND.value, 0
        )
        expected_held = self.hold_repository.sum_active_quantity(subject_id, service_type)
        expected_available = expected_total - expected_consumed - expected_held

        discrepancies = []
        for field, stored, expected in (
            ("total", balance.total_quantity, expected_total),
            ("consumed", balance.consumed_quantity, expected_consumed),
            ("held", balance.held_quantity, expected_held),
            ("available", balance.available_quantity, expected_available),
        ):
            if stored != expected:
                discrepancies.append(f"{field}: stored={stored} expected={expected}")

        if discrepancies:
            self.logger.error(
                "Entitlement balance drift detected",
                extra={
                    "subject_id": subject_id,
                    "service_type": service_type,
                    "discrepancies": discrepancies,
                },
            )

        return BalanceReconciliation(
            subject_id=subject_id,
            service_type=service_type,
            stored=EntitlementSnapshot.from_balance(balance),
            expected_total=expected_total,
            expected_consumed=expected_consumed,
            expected_held=expected_held,
            expected_available=expected_available,
            discrepancies=discrepancies,
        )

    # Ledger writes

    @BaseService.measure_operation("grant_initial")
    def grant_initial(
        self,
        subject_id: str,
        service_type: str,
        quantity: int,
        *,
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        """
        Grant units to a subject, creating the balance on first grant.

        Later grants accumulate on the same balance; ``expires_at`` (when given)
        replaces the validity end.
        """
        _require_positive(quantity)

        with self.optional_transaction(use_transaction):
            balance = self.entitlement_repository.get_balance(
                subject_id, service_type, for_update=True
            )
            if balance is None:
                balance = self.entitlement_repository.create_balance(
                    subject_id, service_type, expires_at=ensure_utc(expires_at)
                )
            elif expires_at is not None:
                balance.expires_at = ensure_utc(expires_at)
                self.db.flush()

            updated = self._apply(balance, total=quantity)
            entry = self._write_entry(
                updated,
                quantity=quantity,
                entry_type=LedgerEntryType.INITIAL,
                source=LedgerSource.CONTRACT_GRANT,
                created_by=created_by,
            )

        return entry

    @BaseService.measure_operation("record_consumption")
    def record_consumption(
        self,
        subject_id: str,
        service_type: str,
        quantity: int,
        booking_id: Optional[str] = None,
        *,
        hold_id: Optional[str] = None,
        created_by: Optional[str] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        """
        Spend units.

        Without ``hold_id`` the units come out of ``available`` and the call
        fails with InsufficientBalanceException when there are not enough.
        With ``hold_id`` the active hold is released as ``completed`` and its
        units move from ``held`` to ``consumed``; ``available`` is unchanged.
        """
        _require_positive(quantity)

        with self.optional_transaction(use_transaction):
            if hold_id is not None:
                entry = self._consume_hold(
                    subject_id, service_type, quantity, hold_id, booking_id, created_by
                )
            else:
                balance = self._get_balance(subject_id, service_type, for_update=True)
                if balance.available_quantity < quantity:
                    raise InsufficientBalanceException(
                        subject_id, service_type, quantity, balance.available_quantity
                    )
                updated = self.entitlement_repository.apply_delta(balance.id, consumed=quantity)
                if updated is None:
                    current = self.entitlement_repository.reload(balance.id)
                    raise InsufficientBalanceException(
                        subject_id, service_type, quantity, current.available_quantity
                    )
                entry = self._write_entry(
                    updated,
                    quantity=-quantity,
                    entry_type=LedgerEntryType.CONSUMPTION,
                    source=(
                        LedgerSource.BOOKING_COMPLETED
                        if booking_id
                        else LedgerSource.DIRECT_CONSUMPTION
                    ),
                    booking_id=booking_id,
                    created_by=created_by,
                )

        return entry

    @BaseService.measure_operation("record_refund")
    def record_refund(
        self,
        subject_id: str,
        service_type: str,
        quantity: int,
        *,
        booking_id: Optional[str] = None,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        """Return previously consumed units to ``available``."""
        _require_positive(quantity)

        with self.optional_transaction(use_transaction):
            balance = self._get_balance(subject_id, service_type, for_update=True)
            if balance.consumed_quantity < quantity:
                raise BusinessRuleException(
                    f"Cannot refund {quantity}: only {balance.consumed_quantity} consumed",
                    code="REFUND_EXCEEDS_CONSUMED",
                    details={
                        "subject_id": subject_id,
                        "service_type": service_type,
                        "requested": quantity,
                        "consumed": balance.consumed_quantity,
                    },
                )
            updated = self._apply(balance, consumed=-quantity)
            entry = self._write_entry(
                updated,
                quantity=quantity,
                entry_type=LedgerEntryType.REFUND,
                source=LedgerSource.BOOKING_REFUND,
                booking_id=booking_id,
                reason=reason,
                created_by=created_by,
            )

        return entry

    @BaseService.measure_operation("record_adjustment")
    def record_adjustment(
        self,
        subject_id: str,
        service_type: str,
        quantity: int,
        reason: str,
        *,
        created_by: Optional[str] = None,
        use_transaction: bool = True,
    ) -> LedgerEntry:
        """
        Manually correct ``total`` by a signed quantity.

        A negative adjustment may only remove units that are still available.
        """
        if not reason or not reason.strip():
            raise ValidationException("Adjustment reason is required", code="REASON_REQUIRED")
        if not quantity:
            raise ValidationException("Adjustment quantity must be non-zero", code="INVALID_QUANTITY")

        with self.optional_transaction(use_transaction):
            balance = self._get_balance(subject_id, service_type, for_update=True)
            if quantity < 0 and balance.available_quantity < -quantity:
                raise InsufficientBalanceException(
                    subject_id, service_type, -quantity, balance.available_quantity
                )
            updated = self.entitlement_repository.apply_delta(balance.id, total=quantity)
            if updated is None:
                current = self.entitlement_repository.reload(balance.id)
                raise InsufficientBalanceException(
                    subject_id, service_type, -quantity, current.available_quantity
                )
            entry = self._write_entry(
                updated,
                quantity=quantity,
                entry_type=LedgerEntryType.ADJUSTMENT,
                source=LedgerSource.MANUAL_ADJUSTMENT,
                reason=reason.strip(),
                created_by=created_by,
            )

        return entry

    @BaseService.measure_operation("record_expiration")
    def record_expiration(
        self,
        subject_id: str,
        service_type: str,
        quantity: Optional[int] = None,
        *,
        created_by: Optional[str] = None,
        use_transaction: bool = True,
    ) -> Optional[LedgerEntry]:
        """
        Deduct units past validity.

        With no ``quantity`` the whole remaining ``available`` is expired;
        held units stay with their holds. Returns None when there was nothing
        to expire.
        """
        if quantity is not None:
            _require_positive(quantity)

        with self.optional_transaction(use_transaction):
            balance = self._get_balance(subject_id, service_type, for_update=True)
            amount = balance.available_quantity if quantity is None else quantity
            if amount == 0:
                return None
            if amount > balance.available_quantity:
                raise InsufficientBalanceException(
                    subject_id, service_type, amount, balance.available_quantity
                )
            updated = self._apply(balance, total=-amount)
            entry = self._write_entry(
                updated,
                quantity=-amount,
                entry_type=LedgerEntryType.EXPIRATION,
                source=LedgerSource.VALIDITY_EXPIRED,
                created_by=created_by,
            )

        return entry

    @BaseService.measure_operation("expire_entitlements")
    def expire_entitlements(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
    ) -> ExpireEntitlementsResult:
        """Expire the available units of every balance past ``expires_at``."""
        at = ensure_utc(now) or utc_now()
        limit = batch_size or settings.entitlement_expiration_batch_size
        lapsed = [
            (balance.subject_id, balance.service_type)
            for balance in self.entitlement_repository.find_lapsed(at, limit)
        ]

        results: ExpireEntitlementsResult = {
            "processed": 0,
            "expired_units": 0,
            "failed": 0,
            "run_at": at.isoformat(),
        }
        for subject_id, service_type in lapsed:
            results["processed"] += 1
            try:
                with self.transaction():
                    entry = self.record_expiration(
                        subject_id,
                        service_type,
                        created_by="system:expiration",
                        use_transaction=False,
                    )
            except DomainException as exc:
                results["failed"] += 1
                self.logger.error(
                    "Failed to expire entitlement",
                    extra={
                        "subject_id": subject_id,
                        "service_type": service_type,
                        "error": str(exc),
                    },
                )
                continue
            if entry is not None:
                results["expired_units"] += -entry.quantity

        if lapsed:
            self.log_operation("expire_entitlements", **results)
        return results

    # Internals

    @staticmethod
    def _archive_window(
        start: Optional[datetime], end: Optional[datetime]
    ) -> Tuple[datetime, datetime]:
        if start is None or end is None:
            raise ValidationException(
                "Queries that include the archive need a start and an end",
                code="ARCHIVE_RANGE_REQUIRED",
            )
        window_start, window_end = ensure_utc(start), ensure_utc(end)
        max_days = settings.ledger_archive_max_range_days
        if window_end <= window_start:
            raise ValidationException("end must be after start", code="INVALID_DATE_RANGE")
        if window_end - window_start > timedelta(days=max_days):
            raise ValidationException(
                f"Archive queries may span at most {max_days} days",
                code="ARCHIVE_DATE_RANGE_TOO_LARGE",
                details={
                    "start": window_start.isoformat(),
                    "end": window_end.isoformat(),
                    "max_days": max_days,
                },
            )
        return window_start, window_end

    def _get_balance(
        self, subject_id: str, service_type: str, *, for_update: bool = False
    ) -> EntitlementBalance:
        balance = self.entitlement_repository.get_balance(
            subject_id, service_type, for_update=for_update
        )
        if balance is None:
            raise EntitlementNotFoundException(subject_id, service_type)
        return balance

    def _apply(self, balance: EntitlementBalance, **delta: int) -> EntitlementBalance:
        """apply_delta for changes the caller already validated; a rejection is a bug."""
        updated = self.entitlement_repository.apply_delta(balance.id, **delta)
        if updated is None:
            raise BalanceInvariantViolation(
                f"Balance {balance.subject_id}/{balance.service_type} rejected a validated update",
                details={"balance_id": balance.id, **delta},
            )
        return updated

    def _consume_hold(
        self,
        subject_id: str,
        service_type: str,
        quantity: int,
        hold_id: str,
        booking_id: Optional[str],
        created_by: Optional[str],
    ) -> LedgerEntry:
        hold = self.hold_service.get_hold(hold_id)
        if (
            hold.subject_id != subject_id
            or hold.service_type != service_type
            or hold.quantity != quantity
        ):
            raise ValidationException(
                "Hold does not match the consumption request",
                code="HOLD_MISMATCH",
                details={"hold_id": hold_id},
            )

        hold = self.hold_service.finalize_hold(
            hold_id,
            HoldStatus.RELEASED.value,
            HoldReleaseReason.COMPLETED.value,
            booking_id=booking_id,
        )
        balance = self._get_balance(subject_id, service_type, for_update=True)
        updated = self._apply(balance, held=-quantity, consumed=quantity)
        return self._write_entry(
            updated,
            quantity=-quantity,
            entry_type=LedgerEntryType.CONSUMPTION,
            source=LedgerSource.BOOKING_COMPLETED,
            hold_id=hold.id,
            booking_id=booking_id or hold.booking_id,
            created_by=created_by,
        )

    def _write_entry(
        self,
        balance: EntitlementBalance,
        *,
        quantity: int,
        entry_type: LedgerEntryType,
        source: LedgerSource,
        hold_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        reason: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> LedgerEntry:
        if not balance.is_consistent():
            raise BalanceInvariantViolation(
                f"Balance {balance.subject_id}/{balance.service_type} is inconsistent",
                details=balance.to_dict(),
            )
        entry = self.ledger_repository.append(
            subject_id=balance.subject_id,
            service_type=balance.service_type,
            quantity=quantity,
            entry_type=entry_type.value,
            source=source.value,
            balance_after=balance.available_quantity,
            hold_id=hold_id,
            booking_id=booking_id,
            reason=reason,
            created_by=created_by,
        )
        prometheus_metrics.record_ledger_entry(entry_type.value, balance.service_type)
        self.log_operation(
            f"ledger_{entry_type.value}",
            subject_id=balance.subject_id,
            service_type=balance.service_type,
            quantity=quantity,
            balance_after=balance.available_quantity,
            booking_id=booking_id,
        )
        return entry
