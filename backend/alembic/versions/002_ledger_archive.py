# backend/alembic/versions/002_ledger_archive.py
"""Ledger archive table and archive policies

Revision ID: 002_ledger_archive
Revises: 001_entitlement_core
Create Date: 2026-10-19 00:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002_ledger_archive"
down_revision: Union[str, None] = "001_entitlement_core"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create ledger archive tables."""
    print("Creating service_ledger_entries_archive table...")
    op.create_table(
        "service_ledger_entries_archive",
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
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "archived_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_ledger_archive_subject_service_created",
        "service_ledger_entries_archive",
        ["subject_id", "service_type", "created_at"],
    )

    print("Creating service_ledger_archive_policies table...")
    op.create_table(
        "service_ledger_archive_policies",
        sa.Column("id", sa.String(length=26), nullable=False),
        sa.Column("scope", sa.String(length=20), nullable=False),
        sa.Column("subject_id", sa.String(length=64), nullable=True),
        sa.Column("service_type", sa.String(length=50), nullable=True),
        sa.Column("archive_after_days", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("archive_after_days >= 1", name="ck_archive_policy_days_positive"),
        sa.CheckConstraint(
            "(scope = 'subject' AND subject_id IS NOT NULL AND service_type IS NULL) "
            "OR (scope = 'service_type' AND subject_id IS NULL AND service_type IS NOT NULL) "
            "OR (scope = 'global' AND subject_id IS NULL AND service_type IS NULL)",
            name="ck_archive_policy_scope",
        ),
    )
    op.create_index(
        "ix_service_ledger_archive_policies_subject_id",
        "service_ledger_archive_policies",
        ["subject_id"],
    )

    print("Ledger archive tables created successfully!")


def downgrade() -> None:
    """Drop ledger archive tables."""
    print("Dropping ledger archive tables...")

    op.drop_index(
        "ix_service_ledger_archive_policies_subject_id",
        table_name="service_ledger_archive_policies",
    )
    op.drop_table("service_ledger_archive_policies")

    op.drop_index(
        "ix_ledger_archive_subject_service_created",
        table_name="service_ledger_entries_archive",
    )
    op.drop_table("service_ledger_entries_archive")

    print("Ledger archive tables dropped.")
