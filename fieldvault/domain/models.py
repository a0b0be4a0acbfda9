from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the same models run against sqlite in tests.
JsonColumn = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER PRIMARY KEY columns.
SnapshotId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class MigrationRun(Base):
    __tablename__ = "field_migration_runs"
    __table_args__ = (
        Index("ix_field_migration_runs_table_status", "table_name", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    table_name: Mapped[str] = mapped_column(String, index=True)
    # Sorted list of sensitive field names the run covers.
    fields_json: Mapped[list[str]] = mapped_column(JsonColumn)
    scope_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    batch_size: Mapped[int] = mapped_column(Integer)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[str] = mapped_column(String, index=True)
    # Wrapped as {"k": key} so integer and string primary keys round-trip unchanged.
    last_processed_key_json: Mapped[dict[str, Any] | None] = mapped_column(JsonColumn, nullable=True)
    scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    encrypted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    snapshot_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Written only by cancel requests, never by progress saves.
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failures_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonColumn, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class MigrationSnapshotRow(Base):
    __tablename__ = "field_migration_snapshots"
    __table_args__ = (
        Index("ix_field_migration_snapshots_snapshot_id_id", "snapshot_id", "id"),
    )

    id: Mapped[int] = mapped_column(SnapshotId, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[str] = mapped_column(String)
    table_name: Mapped[str] = mapped_column(String)
    record_key_json: Mapped[dict[str, Any]] = mapped_column(JsonColumn)
    # Pre-migration values of the covered fields only.
    values_json: Mapped[dict[str, Any]] = mapped_column(JsonColumn)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
