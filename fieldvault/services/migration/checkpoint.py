from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from fieldvault.core.errors import MigrationAbortedError, MigrationFailedError


STATUS_PENDING = "pending"
STATUS_SCANNING = "scanning"
STATUS_ENCRYPTING = "encrypting"
STATUS_COMPLETED = "completed"
STATUS_ABORTED = "aborted"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_ABORTED, STATUS_FAILED})
# Interrupted runs (crash, cancel, store outage) resume from their cursor; completed runs never do.
RESUMABLE_STATUSES = frozenset({STATUS_PENDING, STATUS_SCANNING, STATUS_ENCRYPTING, STATUS_ABORTED, STATUS_FAILED})

# Keep per-run failure reports bounded.
MAX_REPORTED_FAILURES = 100


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid4().hex


@dataclass
class MigrationCounts:
    scanned: int = 0
    encrypted: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "encrypted": self.encrypted,
            "skipped": self.skipped,
            "failed": self.failed,
        }


@dataclass
class MigrationCheckpoint:
    run_id: str
    table: str
    fields: list[str]
    batch_size: int
    dry_run: bool = False
    scope: dict[str, Any] | None = None
    status: str = STATUS_PENDING
    last_processed_key: Any = None
    counts: MigrationCounts = field(default_factory=MigrationCounts)
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    snapshot_id: str | None = None
    cancel_requested: bool = False
    rolled_back_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    failures: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_resumable(self) -> bool:
        return self.status in RESUMABLE_STATUSES and self.rolled_back_at is None

    def matches(self, *, table: str, fields: list[str], scope: dict[str, Any] | None, dry_run: bool) -> bool:
        return (
            self.table == table
            and sorted(self.fields) == sorted(fields)
            and (self.scope or None) == (scope or None)
            and self.dry_run == dry_run
        )

    def record_failure(self, record_id: Any, error_code: str, field_name: str | None = None) -> None:
        if len(self.failures) < MAX_REPORTED_FAILURES:
            self.failures.append({"record_id": str(record_id), "field": field_name, "error": error_code})

    def raise_for_status(self) -> None:
        if self.status == STATUS_FAILED:
            raise MigrationFailedError(self.error_message or f"Migration run {self.run_id} failed")
        if self.status == STATUS_ABORTED:
            raise MigrationAbortedError(f"Migration run {self.run_id} was cancelled")

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "table": self.table,
            "fields": list(self.fields),
            "batch_size": self.batch_size,
            "dry_run": self.dry_run,
            "scope": self.scope,
            "status": self.status,
            "last_processed_key": self.last_processed_key,
            "counts": self.counts.as_dict(),
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "snapshot_id": self.snapshot_id,
            "cancel_requested": self.cancel_requested,
            "rolled_back_at": self.rolled_back_at.isoformat() if self.rolled_back_at else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "failures": list(self.failures),
        }


class CheckpointStore(Protocol):
    """Durable checkpoint storage.

    ``save`` persists progress but never writes ``cancel_requested``; that flag is
    only changed through ``request_cancel``/``clear_cancel`` so a concurrent cancel
    is not lost under a progress write.
    """

    async def create(self, checkpoint: MigrationCheckpoint) -> None:
        ...

    async def save(self, checkpoint: MigrationCheckpoint) -> None:
        ...

    async def request_cancel(self, run_id: str) -> bool:
        """Flag a run for cancellation; returns False when the run does not exist."""
        ...

    async def clear_cancel(self, run_id: str) -> None:
        ...

    async def get(self, run_id: str) -> MigrationCheckpoint | None:
        ...

    async def find_resumable(
        self,
        *,
        table: str,
        fields: list[str],
        scope: dict[str, Any] | None,
        dry_run: bool,
    ) -> MigrationCheckpoint | None:
        ...

    async def list_runs(self, *, table: str | None = None, limit: int = 50) -> list[MigrationCheckpoint]:
        ...
