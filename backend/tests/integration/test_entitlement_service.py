"""Entitlement ledger and balance accounting against a real database."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import SERVICE_TYPE, SESSION_START, SUBJECT_ID
from mentorbook.core.exceptions import (
    BusinessRuleException,
    EntitlementNotFoundException,
    InsufficientBalanceException,
    LedgerImmutableError,
    ValidationException,
)
from mentorbook.models.entitlement import EntitlementBalance, LedgerEntry, LedgerEntryType


def _snapshot(entitlement_service):
    return entitlement_service.get_entitlement(SUBJECT_ID, SERVICE_TYPE)


def _ledger_count(db) -> int:
    return db.execute(select(func.count()).select_from(LedgerEntry)).scalar_one()


class TestGrant:
    def test_initial_grant_creates_balance_and_entry(self, entitlement_service):
        entry = entitlement_service.grant_initial(
            SUBJECT_ID, SERVICE_TYPE, 10, created_by="admin_1"
        )

        snapshot = _snapshot(entitlement_service)
        assert (snapshot.total, snapshot.consumed, snapshot.held, snapshot.available) == (
            10,
            0,
            0,
            10,
        )
        assert entry.entry_type == LedgerEntryType.INITIAL.value
        assert entry.quantity == 10
        assert entry.balance_after == 10
        assert entry.created_by == "admin_1"

    def test_grants_accumulate(self, entitlement_service, granted):
        granted(5)
        assert _snapshot(entitlement_service).total == 15
        assert _snapshot(entitlement_service).available == 15

    def test_grant_sets_validity_end(self, entitlement_service):
        entitlement_service.grant_initial(
            SUBJECT_ID, SERVICE_TYPE, 3, expires_at=SESSION_START + timedelta(days=90)
        )
        assert _snapshot(entitlement_service).expires_at is not None

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_grant_rejected(self, entitlement_service, quantity):
        with pytest.raises(ValidationException):
            entitlement_service.grant_initial(SUBJECT_ID, SERVICE_TYPE, quantity)

    def test_missing_entitlement(self, entitlement_service):
        with pytest.raises(EntitlementNotFoundException):
            entitlement_service.get_entitlement("nobody", SERVICE_TYPE)


class TestConsumption:
    def test_direct_consumption(self, entitlement_service, granted):
        entry = entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 3)

        snapshot = _snapshot(entitlement_service)
        assert snapshot.consumed == 3
        assert snapshot.available == 7
        assert entry.quantity == -3
        assert entry.balance_after == 7
        assert entry.source == "direct_consumption"

    def test_over_consumption_is_rejected_without_side_effects(
        self, db, entitlement_service, granted
    ):
        before = _ledger_count(db)
        with pytest.raises(InsufficientBalanceException) as exc_info:
            entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 11)

        assert exc_info.value.details["available"] == 10
        assert _snapshot(entitlement_service).available == 10
        assert _ledger_count(db) == before

    def test_consumption_through_hold_moves_held_to_consumed(
        self, entitlement_service, hold_service, granted
    ):
        hold = hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 2)
        assert _snapshot(entitlement_service).available == 8

        entry = entitlement_service.record_consumption(
            SUBJECT_ID, SERVICE_TYPE, 2, hold_id=hold.id
        )

        snapshot = _snapshot(entitlement_service)
        assert (snapshot.consumed, snapshot.held, snapshot.available) == (2, 0, 8)
        assert entry.hold_id == hold.id
        released = hold_service.get_hold(hold.id)
        assert released.status == "released"
        assert released.release_reason == "completed"

    def test_hold_quantity_must_match(self, entitlement_service, hold_service, granted):
        hold = hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 2)
        with pytest.raises(ValidationException):
            entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 1, hold_id=hold.id)
        assert hold_service.get_hold(hold.id).status == "active"


class TestRefundAdjustmentExpiration:
    def test_refund_returns_consumed_units(self, entitlement_service, granted):
        entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 2)
        entry = entitlement_service.record_refund(
            SUBJECT_ID, SERVICE_TYPE, 1, reason="session cancelled late by mentor"
        )

        snapshot = _snapshot(entitlement_service)
        assert (snapshot.consumed, snapshot.available) == (1, 9)
        assert entry.quantity == 1

    def test_refund_cannot_exceed_consumed(self, entitlement_service, granted):
        entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 1)
        with pytest.raises(BusinessRuleException) as exc_info:
            entitlement_service.record_refund(SUBJECT_ID, SERVICE_TYPE, 2)
        assert exc_info.value.code == "REFUND_EXCEEDS_CONSUMED"

    def test_adjustment_requires_reason(self, entitlement_service, granted):
        with pytest.raises(ValidationException) as exc_info:
            entitlement_service.record_adjustment(SUBJECT_ID, SERVICE_TYPE, 2, reason="  ")
        assert exc_info.value.code == "REASON_REQUIRED"

    def test_signed_adjustments(self, entitlement_service, granted):
        entitlement_service.record_adjustment(SUBJECT_ID, SERVICE_TYPE, 3, reason="bonus sessions")
        entitlement_service.record_adjustment(SUBJECT_ID, SERVICE_TYPE, -5, reason="contract amended")

        snapshot = _snapshot(entitlement_service)
        assert (snapshot.total, snapshot.available) == (8, 8)

    def test_negative_adjustment_cannot_touch_held_units(
        self, entitlement_service, hold_service, granted
    ):
        hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 8)
        with pytest.raises(InsufficientBalanceException):
            entitlement_service.record_adjustment(SUBJECT_ID, SERVICE_TYPE, -3, reason="shrink")

    def test_expiration_removes_only_available(self, entitlement_service, hold_service, granted):
        hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 2)
        entry = entitlement_service.record_expiration(SUBJECT_ID, SERVICE_TYPE)

        snapshot = _snapshot(entitlement_service)
        assert entry.quantity == -8
        assert (snapshot.total, snapshot.held, snapshot.available) == (2, 2, 0)
        assert entitlement_service.record_expiration(SUBJECT_ID, SERVICE_TYPE) is None

    def test_expire_entitlements_sweeps_lapsed_balances(self, entitlement_service):
        entitlement_service.grant_initial(
            "lapsed", SERVICE_TYPE, 4, expires_at=SESSION_START - timedelta(days=1)
        )
        entitlement_service.grant_initial(
            "current", SERVICE_TYPE, 4, expires_at=SESSION_START + timedelta(days=30)
        )

        result = entitlement_service.expire_entitlements(now=SESSION_START)

        assert result["processed"] == 1
        assert result["expired_units"] == 4
        assert result["failed"] == 0
        assert entitlement_service.get_entitlement("lapsed", SERVICE_TYPE).available == 0
        assert entitlement_service.get_entitlement("current", SERVICE_TYPE).available == 4


class TestLedger:
    def test_entries_are_immutable(self, db, entitlement_service, granted):
        entry = db.execute(select(LedgerEntry)).scalars().first()

        entry.quantity = 99
        with pytest.raises(LedgerImmutableError):
            db.flush()
        db.rollback()

        entry = db.execute(select(LedgerEntry)).scalars().first()
        db.delete(entry)
        with pytest.raises(LedgerImmutableError):
            db.flush()
        db.rollback()

    def test_list_entries_filters_and_paginates(self, entitlement_service, granted):
        entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 1)
        entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 1)

        everything = entitlement_service.list_ledger_entries(SUBJECT_ID, SERVICE_TYPE)
        consumption = entitlement_service.list_ledger_entries(
            SUBJECT_ID, SERVICE_TYPE, entry_types=["consumption"]
        )
        page = entitlement_service.list_ledger_entries(SUBJECT_ID, SERVICE_TYPE, limit=2)

        assert len(everything) == 3
        assert {e.entry_type for e in consumption} == {"consumption"}
        assert len(consumption) == 2
        assert len(page) == 2

    def test_list_entries_limit_bounds(self, entitlement_service, granted):
        with pytest.raises(ValidationException):
            entitlement_service.list_ledger_entries(SUBJECT_ID, limit=0)

    def test_ledger_reconciles_with_balance(self, entitlement_service, hold_service, granted):
        entitlement_service.record_consumption(SUBJECT_ID, SERVICE_TYPE, 2)
        entitlement_service.record_refund(SUBJECT_ID, SERVICE_TYPE, 1)
        entitlement_service.record_adjustment(SUBJECT_ID, SERVICE_TYPE, -2, reason="correction")
        hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 3)

        report = entitlement_service.reconcile_balance(SUBJECT_ID, SERVICE_TYPE)

        assert report.is_consistent
        assert report.expected_total == 8
        assert report.expected_consumed == 1
        assert report.expected_held == 3
        assert report.expected_available == 4

    def test_reconcile_reports_drift(self, db, entitlement_service, hold_service, granted):
        hold = hold_service.create_hold(SUBJECT_ID, SERVICE_TYPE, 1)
        # Orphan the hold's units by flipping it outside the service
        db.get(type(hold), hold.id).status = "cancelled"
        db.commit()

        report = entitlement_service.reconcile_balance(SUBJECT_ID, SERVICE_TYPE)
        assert not report.is_consistent
        assert any(d.startswith("held") for d in report.discrepancies)


class TestBalanceConstraints:
    def test_database_rejects_derived_mismatch(self, db, entitlement_service, granted):
        from sqlalchemy.exc import IntegrityError

        balance = db.execute(select(EntitlementBalance)).scalar_one()
        balance.available_quantity = 11
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()

    def test_guarded_delta_refuses_negative_quantities(self, db, granted):
        from mentorbook.repositories.entitlement_repository import EntitlementRepository

        repo = EntitlementRepository(db)
        balance = repo.get_balance(SUBJECT_ID, SERVICE_TYPE)

        assert repo.apply_delta(balance.id, held=11) is None
        assert repo.apply_delta(balance.id, consumed=-1) is None
        updated = repo.apply_delta(balance.id, held=10)
        assert updated.available_quantity == 0
        assert updated.is_consistent()
