# backend/alembic/versions/001_entitlement_core.py
"""Entitlement ledger, holds, calendar slots and bookings

Revision ID: 001_entitlement_core
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from mentorbook.models.calendar_slot import (
    NO_OVERLAP_CONSTRAINT,
    POSTGRES_BTREE_GIST,
    POSTGRES_NO_OVERLAP,
    SQLITE_NO_OVERLAP_INSERT,
    SQLITE_NO_OVERLAP_UPDATE,
)

# revision identifiers, used by Alembic.
revision: str = "001_entitlement_core"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
    )


def upgrade() -> None:
    """Create entitlement core tables."""
    print("Creating entitlement core tables...")

    bind = op.get_bind()
    dialect_name = bind.dialect.name if bind is not None else "postgresql"
    is_postgres = dialect_name == "postgresql"

    print("Creating entitlement_balances table...")
    op.create_table(
        "entitlement_balances",
        sa.Column("id", sa.String(length=26), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=False),
        sa.Column("service_type", sa.String(length=50), nullable=False),
        sa.Column("total_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consumed_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("held_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subject_id", "service_type", name="uq_entitlement_subject_service"),
        sa.CheckConstraint(
            "total_quantity >= 0 AND consumed_quantity >= 0 "
            "AND held_quantity >= 0 AND available_quantity >= 0",
            name="ck_entitlement_quantities_non_negative",
        ),
        sa.CheckConstraint(
            "available_quantity = total_quantity - consumed_quantity - held_quantity",
            name="ck_entitlement_available_derived",
        ),
    )
    op.create_index(
        "ix_entitlement_balances_subject_id", "entitlement_balances", ["subject_id"]
    )
    op.create_index(
        "ix_entitlement_balances_expires_at", "entitlement_balances", ["expires_at"]
    )

    print("Creating service_ledger_entries table...")
    op.create_table(
        "service_ledger_entries",
        sa.Column("id", sa.String(length=26), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=False),
        sa.Column("service_type", sa.String(length=50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("entry_type", sa.String(length=20), nullable=False),
        sa.Column("source", sa.String(length=50), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("hold_id", sa.String(length=26), nullable=True),
        sa.Column("booking_id", sa.String(length=26), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("balance_after >= 0", name="ck_ledger_balance_after_non_negative"),
        sa.CheckConstraint(
            "(entry_type IN ('initial', 'refund') AND quantity > 0) "
            "OR (entry_type IN ('consumption', 'expiration') AND quantity < 0) "
            "OR (entry_type = 'adjustment' AND quantity <> 0)",
            name="ck_ledger_quantity_sign",
        ),
        sa.CheckConstraint(
            "entry_type <> 'adjustment' OR (reason IS NOT NULL AND length(trim(reason)) > 0)",
            name="ck_ledger_adjustment_reason",
        ),
    )
    op.create_index("ix_service_ledger_entries_hold_id", "service_ledger_entries", ["hold_id"])
    op.create_index(
        "ix_service_ledger_entries_booking_id", "service_ledger_entries", ["booking_id"]
    )
    op.create_index(
        "ix_ledger_subject_service_created",
        "service_ledger_entries",
        ["subject_id", "service_type", "created_at"],
    )

    print("Creating service_holds table...")
    op.create_table(
        "service_holds",
        sa.Column("id", sa.String(length=26), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=False),
        sa.Column("service_type", sa.String(length=50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("release_reason", sa.Text(), nullable=True),
        sa.Column("booking_id", sa.String(length=26), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("quantity > 0", name="ck_service_holds_quantity_positive"),
        sa.CheckConstraint(
            "status IN ('active', 'released', 'cancelled', 'expired')",
            name="ck_service_holds_status",
        ),
    )
    op.create_index("ix_service_holds_booking_id", "service_holds", ["booking_id"])
    op.create_index(
        "ix_service_holds_subject_service_status",
        "service_holds",
        ["subject_id", "service_type", "status"],
    )
    op.create_index(
        "ix_service_holds_active_expiry",
        "service_holds",
        ["status", "expires_at"],
        postgresql_where=sa.text("status = 'active'"),
    )

    print("Creating bookings table...")
    op.create_table(
        "bookings",
        sa.Column("id", sa.String(length=26), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("mentor_id", sa.String(length=64), nullable=False),
        sa.Column("service_type", sa.String(length=50), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("hold_id", sa.String(length=26), nullable=True),
        sa.Column("topic", sa.String(length=255), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="confirmed"),
        sa.Column("meeting_provider", sa.String(length=50), nullable=True),
        sa.Column("meeting_id", sa.String(length=255), nullable=True),
        sa.Column("meeting_url", sa.Text(), nullable=True),
        sa.Column("meeting_password", sa.String(length=255), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(length=64), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["hold_id"], ["service_holds.id"]),
        sa.CheckConstraint("end_at > start_at", name="ck_bookings_time_order"),
        sa.CheckConstraint("quantity > 0", name="ck_bookings_quantity_positive"),
        sa.CheckConstraint(
            "status IN ('confirmed', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
    )
    op.create_index("ix_bookings_id", "bookings", ["id"])
    op.create_index("ix_bookings_subject_id", "bookings", ["subject_id"])
    op.create_index("ix_bookings_student_id", "bookings", ["student_id"])
    op.create_index("ix_bookings_mentor_id", "bookings", ["mentor_id"])
    op.create_index("ix_bookings_status", "bookings", ["status"])
    op.create_index("ix_bookings_mentor_start", "bookings", ["mentor_id", "start_at"])

    print("Creating calendar_slots table...")
    op.create_table(
        "calendar_slots",
        sa.Column("id", sa.String(length=26), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=False),
        sa.Column("subject_role", sa.String(length=20), nullable=False),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="booked"),
        sa.Column("booking_id", sa.String(length=26), nullable=True),
        sa.Column("meeting_id", sa.String(length=255), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("session_type", sa.String(length=50), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["booking_id"], ["bookings.id"]),
        sa.CheckConstraint("end_at > start_at", name="ck_calendar_slots_time_order"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_calendar_slots_duration_positive"),
        sa.CheckConstraint(
            "status IN ('booked', 'completed', 'cancelled')",
            name="ck_calendar_slots_status",
        ),
        sa.CheckConstraint(
            "subject_role IN ('mentor', 'student', 'counselor')",
            name="ck_calendar_slots_subject_role",
        ),
    )
    op.create_index("ix_calendar_slots_booking_id", "calendar_slots", ["booking_id"])
    op.create_index("ix_calendar_slots_subject_start", "calendar_slots", ["subject_id", "start_at"])

    if is_postgres:
        print("Adding calendar overlap exclusion constraint (btree_gist)...")
        op.execute(POSTGRES_BTREE_GIST)
        op.execute(POSTGRES_NO_OVERLAP)
    elif dialect_name == "sqlite":
        print("Adding calendar overlap triggers...")
        op.execute(SQLITE_NO_OVERLAP_INSERT)
        op.execute(SQLITE_NO_OVERLAP_UPDATE)

    print("Entitlement core tables created successfully!")


def downgrade() -> None:
    """Drop entitlement core tables."""
    print("Dropping entitlement core tables...")

    bind = op.get_bind()
    dialect_name = bind.dialect.name if bind is not None else "postgresql"

    if dialect_name == "postgresql":
        op.execute(
            f"ALTER TABLE calendar_slots DROP CONSTRAINT IF EXISTS {NO_OVERLAP_CONSTRAINT}"
        )
    elif dialect_name == "sqlite":
        op.execute(f"DROP TRIGGER IF EXISTS {NO_OVERLAP_CONSTRAINT}_insert")
        op.execute(f"DROP TRIGGER IF EXISTS {NO_OVERLAP_CONSTRAINT}_update")

    op.drop_index("ix_calendar_slots_subject_start", table_name="calendar_slots")
    op.drop_index("ix_calendar_slots_booking_id", table_name="calendar_slots")
    op.drop_table("calendar_slots")

    for index_name in (
        "ix_bookings_mentor_start",
        "ix_bookings_status",
        "ix_bookings_mentor_id",
        "ix_bookings_student_id",
        "ix_bookings_subject_id",
        "ix_bookings_id",
    ):
        op.drop_index(index_name, table_name="bookings")
    op.drop_table("bookings")

    op.drop_index("ix_service_holds_active_expiry", table_name="service_holds")
    op.drop_index("ix_service_holds_subject_service_status", table_name="service_holds")
    op.drop_index("ix_service_holds_booking_id", table_name="service_holds")
    op.drop_table("service_holds")

    op.drop_index("ix_ledger_subject_service_created", table_name="service_ledger_entries")
    op.drop_index("ix_service_ledger_entries_booking_id", table_name="service_ledger_entries")
    op.drop_index("ix_service_ledger_entries_hold_id", table_name="service_ledger_entries")
    op.drop_table("service_ledger_entries")

    op.drop_index("ix_entitlement_balances_expires_at", table_name="entitlement_balances")
    op.drop_index("ix_entitlement_balances_subject_id", table_name="entitlement_balances")
    op.drop_table("entitlement_balances")

    print("Entitlement core tables dropped.")
