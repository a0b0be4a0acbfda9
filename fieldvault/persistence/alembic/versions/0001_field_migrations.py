"""add field migration checkpoint and snapshot tables

Revision ID: 0001_field_migrations
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_field_migrations"
down_revision = None
branch_labels = None
depends_on = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade() -> None:
    # One row per migration run; progress is committed after every batch.
    op.create_table(
        "field_migration_runs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("fields_json", _json(), nullable=False),
        sa.Column("scope_json", _json(), nullable=True),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("last_processed_key_json", _json(), nullable=True),
        sa.Column("scanned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("encrypted", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("snapshot_id", sa.String(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failures_json", _json(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rolled_back_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_field_migration_runs_table_name", "field_migration_runs", ["table_name"], unique=False)
    op.create_index("ix_field_migration_runs_status", "field_migration_runs", ["status"], unique=False)
    op.create_index(
        "ix_field_migration_runs_table_status",
        "field_migration_runs",
        ["table_name", "status"],
        unique=False,
    )

    # Pre-migration values for rollback, written once before the first batch.
    op.create_table(
        "field_migration_snapshots",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("snapshot_id", sa.String(), nullable=False),
        sa.Column("table_name", sa.String(), nullable=False),
        sa.Column("record_key_json", _json(), nullable=False),
        sa.Column("values_json", _json(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_field_migration_snapshots_snapshot_id_id",
        "field_migration_snapshots",
        ["snapshot_id", "id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_field_migration_snapshots_snapshot_id_id", table_name="field_migration_snapshots")
    op.drop_table("field_migration_snapshots")

    op.drop_index("ix_field_migration_runs_table_status", table_name="field_migration_runs")
    op.drop_index("ix_field_migration_runs_status", table_name="field_migration_runs")
    op.drop_index("ix_field_migration_runs_table_name", table_name="field_migration_runs")
    op.drop_table("field_migration_runs")
