from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from fieldvault.core.errors import (
    FieldVaultError,
    MigrationInProgressError,
    MigrationNotFoundError,
    OptimisticWriteConflictError,
    PolicyConfigurationError,
    RollbackUnavailableError,
    StoreIOError,
)
from fieldvault.services.audit import (
    OPERATION_MIGRATE,
    OUTCOME_FAILURE,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    AuditSink,
    record_event,
)
from fieldvault.services.crypto import codec
from fieldvault.services.crypto.encryptor import FieldEncryptor
from fieldvault.services.migration.checkpoint import (
    STATUS_ABORTED,
    STATUS_COMPLETED,
    STATUS_ENCRYPTING,
    STATUS_FAILED,
    STATUS_SCANNING,
    CheckpointStore,
    MigrationCheckpoint,
    new_run_id,
    utc_now,
)
from fieldvault.services.migration.store import RecordStore
from fieldvault.services.resilience import (
    RetryPolicy,
    default_retry_policy,
    retry_async,
    snapshot_retry_policy,
)


logger = logging.getLogger(__name__)

RECORD_ENCRYPTED = "encrypted"
RECORD_SKIPPED = "skipped"
RECORD_FAILED = "failed"

BatchHook = Callable[[MigrationCheckpoint], Awaitable[None]]


@dataclass
class StagedRecord:
    key: Any
    expected: dict[str, Any] = field(default_factory=dict)
    values: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_field: str | None = None

    @property
    def has_updates(self) -> bool:
        return bool(self.values)


class MigrationEngine:
    """Batched, resumable plaintext-to-ciphertext migration of one table.

    Each run walks the table in primary-key order from the checkpoint cursor.
    Records are encrypted off the event loop, written back with conditional
    updates, and the cursor only advances after a batch is committed. Values
    already encrypted under the current key version are skipped, so re-running
    or resuming a run is a no-op for finished records.
    """

    def __init__(
        self,
        store: RecordStore,
        checkpoints: CheckpointStore,
        encryptor: FieldEncryptor,
        *,
        retry_policy: RetryPolicy | None = None,
        snapshot_retry_policy: RetryPolicy | None = None,
        conflict_max_attempts: int = 3,
        snapshot_enabled: bool = True,
        max_workers: int = 4,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._store = store
        self._checkpoints = checkpoints
        self._encryptor = encryptor
        self._retry_policy = retry_policy
        self._snapshot_retry_policy = snapshot_retry_policy
        self._conflict_max_attempts = max(1, conflict_max_attempts)
        self._snapshot_enabled = snapshot_enabled
        self._max_workers = max(1, max_workers)
        self._audit = audit_sink
        self._active_tables: set[str] = set()

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    def is_active(self, table: str) -> bool:
        return table in self._active_tables

    async def _call(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        policy = self._retry_policy or default_retry_policy()
        return await retry_async(func, policy=policy, operation=operation)

    async def _call_bulk(self, operation: str, func: Callable[[], Awaitable[Any]]) -> Any:
        # Whole-table copies run under their own, longer timeout.
        policy = self._snapshot_retry_policy or snapshot_retry_policy()
        return await retry_async(func, policy=policy, operation=operation)

    async def prepare(
        self,
        *,
        table: str,
        fields: list[str],
        batch_size: int,
        dry_run: bool = False,
        scope: Mapping[str, Any] | None = None,
    ) -> MigrationCheckpoint:
        """Create a checkpoint, or reuse an interrupted one for the same target (Pending -> ready)."""
        policy = self._encryptor.policy
        fields = policy.require_sensitive(fields)
        unmapped = [name for name in fields if not policy.should_encrypt(table, name)]
        if unmapped:
            raise PolicyConfigurationError(f"Fields {unmapped} are not declared sensitive for table {table}")
        scope_dict = dict(scope) if scope else None
        existing = await self._call(
            "checkpoint_find",
            lambda: self._checkpoints.find_resumable(table=table, fields=fields, scope=scope_dict, dry_run=dry_run),
        )
        if existing is not None:
            await self._call("checkpoint_clear_cancel", lambda: self._checkpoints.clear_cancel(existing.run_id))
            existing.batch_size = batch_size
            existing.cancel_requested = False
            existing.error_code = None
            existing.error_message = None
            logger.info(
                "migration_resumed run_id=%s table=%s last_processed_key=%s",
                existing.run_id,
                table,
                existing.last_processed_key,
            )
            return existing
        checkpoint = MigrationCheckpoint(
            run_id=new_run_id(),
            table=table,
            fields=fields,
            batch_size=batch_size,
            dry_run=dry_run,
            scope=scope_dict,
        )
        await self._call("checkpoint_create", lambda: self._checkpoints.create(checkpoint))
        logger.info(
            "migration_created run_id=%s table=%s fields=%s dry_run=%s scope=%s",
            checkpoint.run_id,
            table,
            fields,
            dry_run,
            sorted(scope_dict) if scope_dict else None,
        )
        return checkpoint

    async def run(
        self,
        checkpoint: MigrationCheckpoint,
        *,
        cancel_event: asyncio.Event | None = None,
        on_batch: BatchHook | None = None,
    ) -> MigrationCheckpoint:
        if checkpoint.status == STATUS_COMPLETED:
            return checkpoint
        if checkpoint.table in self._active_tables:
            raise MigrationInProgressError(f"A migration is already running for {checkpoint.table}")
        self._active_tables.add(checkpoint.table)
        try:
            return await self._run(checkpoint, cancel_event=cancel_event, on_batch=on_batch)
        finally:
            self._active_tables.discard(checkpoint.table)

    async def _run(
        self,
        checkpoint: MigrationCheckpoint,
        *,
        cancel_event: asyncio.Event | None,
        on_batch: BatchHook | None,
    ) -> MigrationCheckpoint:
        try:
            checkpoint.status = STATUS_SCANNING
            checkpoint.completed_at = None
            await self._save(checkpoint)
            if not checkpoint.dry_run and self._snapshot_enabled and checkpoint.snapshot_id is None:
                checkpoint.snapshot_id = await self._call_bulk(
                    "snapshot",
                    lambda: self._store.snapshot(
                        checkpoint.table, fields=checkpoint.fields, scope=checkpoint.scope
                    ),
                )
                logger.info("migration_snapshot_created run_id=%s snapshot_id=%s", checkpoint.run_id, checkpoint.snapshot_id)
                await self._save(checkpoint)

            while True:
                # Cancellation is only honoured between batches so no batch is left half-committed.
                if await self._cancel_requested(checkpoint, cancel_event):
                    return await self._finish(checkpoint, STATUS_ABORTED)
                checkpoint.status = STATUS_SCANNING
                rows = await self._call(
                    "scan",
                    lambda: self._store.scan(
                        checkpoint.table,
                        after=checkpoint.last_processed_key,
                        limit=checkpoint.batch_size,
                        scope=checkpoint.scope,
                    ),
                )
                if not rows:
                    return await self._finish(checkpoint, STATUS_COMPLETED)
                checkpoint.status = STATUS_ENCRYPTING
                await self._process_batch(checkpoint, rows)
                await self._save(checkpoint)
                logger.info(
                    "migration_batch_committed run_id=%s table=%s last_processed_key=%s counts=%s",
                    checkpoint.run_id,
                    checkpoint.table,
                    checkpoint.last_processed_key,
                    checkpoint.counts.as_dict(),
                )
                if on_batch is not None:
                    await on_batch(checkpoint)
        except (StoreIOError, TimeoutError, OSError) as exc:
            # Retries are exhausted by now: the store cannot serve scans or checkpoints.
            logger.error("migration_store_unavailable run_id=%s", checkpoint.run_id, exc_info=exc)
            checkpoint.error_code = "STORE_UNAVAILABLE"
            checkpoint.error_message = f"{type(exc).__name__}: {exc}"
            return await self._finish(checkpoint, STATUS_FAILED, persist_best_effort=True)
        except FieldVaultError as exc:
            logger.error("migration_failed run_id=%s error=%s", checkpoint.run_id, type(exc).__name__, exc_info=exc)
            checkpoint.error_code = "MIGRATION_ERROR"
            checkpoint.error_message = str(exc)
            return await self._finish(checkpoint, STATUS_FAILED, persist_best_effort=True)
        except Exception as exc:  # noqa: BLE001 - the run must not stay non-terminal in the store
            logger.error("migration_crashed run_id=%s error=%s", checkpoint.run_id, type(exc).__name__, exc_info=exc)
            checkpoint.error_code = "MIGRATION_ERROR"
            checkpoint.error_message = f"{type(exc).__name__}: {exc}"
            await self._finish(checkpoint, STATUS_FAILED, persist_best_effort=True)
            raise

    async def _save(self, checkpoint: MigrationCheckpoint) -> None:
        checkpoint.updated_at = utc_now()
        await self._call("checkpoint_save", lambda: self._checkpoints.save(checkpoint))

    async def _finish(
        self,
        checkpoint: MigrationCheckpoint,
        status: str,
        *,
        persist_best_effort: bool = False,
    ) -> MigrationCheckpoint:
        checkpoint.status = status
        checkpoint.completed_at = utc_now()
        try:
            await self._save(checkpoint)
        except Exception as exc:  # noqa: BLE001 - keep the in-memory terminal state even if the store is down
            if not persist_best_effort:
                raise
            logger.error("migration_checkpoint_persist_failed run_id=%s", checkpoint.run_id, exc_info=exc)
        logger.info(
            "migration_finished run_id=%s table=%s status=%s counts=%s",
            checkpoint.run_id,
            checkpoint.table,
            status,
            checkpoint.counts.as_dict(),
        )
        return checkpoint

    async def _cancel_requested(self, checkpoint: MigrationCheckpoint, cancel_event: asyncio.Event | None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        # Cross-process cancellation is signalled through the persisted checkpoint.
        stored = await self._call("checkpoint_get", lambda: self._checkpoints.get(checkpoint.run_id))
        if stored is not None and stored.cancel_requested:
            checkpoint.cancel_requested = True
        return checkpoint.cancel_requested

    async def _process_batch(self, checkpoint: MigrationCheckpoint, rows: list[dict[str, Any]]) -> None:
        key_column = self._store.key_column(checkpoint.table)
        staged = await asyncio.to_thread(self._stage_rows, checkpoint, rows, key_column)
        for record in staged:
            if record.error_code is not None:
                outcome = RECORD_FAILED
            elif not record.has_updates:
                outcome = RECORD_SKIPPED
            elif checkpoint.dry_run:
                outcome = RECORD_ENCRYPTED
            else:
                outcome = await self._commit_record(checkpoint, record, key_column)
            checkpoint.counts.scanned += 1
            if outcome == RECORD_ENCRYPTED:
                checkpoint.counts.encrypted += 1
            elif outcome == RECORD_SKIPPED:
                checkpoint.counts.skipped += 1
            else:
                checkpoint.counts.failed += 1
                checkpoint.record_failure(record.key, record.error_code or "WRITE_FAILED", record.error_field)
            record_event(
                self._audit,
                operation=OPERATION_MIGRATE,
                field=",".join(checkpoint.fields),
                record_id=record.key,
                outcome={
                    RECORD_ENCRYPTED: OUTCOME_SUCCESS,
                    RECORD_SKIPPED: OUTCOME_SKIPPED,
                }.get(outcome, OUTCOME_FAILURE),
                table=checkpoint.table,
                error_code=record.error_code if outcome == RECORD_FAILED else None,
                metadata={"run_id": checkpoint.run_id, "dry_run": checkpoint.dry_run},
            )
        # Advance the cursor past every scanned row, failed ones included, so a poison record cannot stall the run.
        checkpoint.last_processed_key = rows[-1][key_column]

    def _stage_rows(
        self,
        checkpoint: MigrationCheckpoint,
        rows: list[dict[str, Any]],
        key_column: str,
    ) -> list[StagedRecord]:
        if self._max_workers == 1 or len(rows) <= 1:
            return [self._stage_record(checkpoint, row, key_column) for row in rows]
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(rows))) as pool:
            return list(pool.map(lambda row: self._stage_record(checkpoint, row, key_column), rows))

    def _stage_record(self, checkpoint: MigrationCheckpoint, row: Mapping[str, Any], key_column: str) -> StagedRecord:
        staged = StagedRecord(key=row[key_column])
        current_version = self._encryptor.current_version
        for field_name in checkpoint.fields:
            if field_name not in row:
                continue
            value = row[field_name]
            if value is None or value == "":
                continue
            payload = codec.decode(value)
            try:
                if payload is codec.NOT_ENCODED:
                    new_value = self._encryptor.encrypt_field(
                        value, field_name, table=checkpoint.table, record_id=staged.key
                    )
                elif payload.version == current_version:
                    continue
                else:
                    new_value = self._encryptor.reencrypt_field(
                        value, field_name, table=checkpoint.table, record_id=staged.key
                    )
            except FieldVaultError as exc:
                logger.warning(
                    "migration_record_failed run_id=%s key=%s field=%s error=%s",
                    checkpoint.run_id,
                    staged.key,
                    field_name,
                    type(exc).__name__,
                )
                return StagedRecord(
                    key=staged.key,
                    error_code=getattr(exc, "code", None) or "ENCRYPTION_FAILED",
                    error_field=field_name,
                )
            staged.expected[field_name] = value
            staged.values[field_name] = new_value
        return staged

    async def _write_once(self, table: str, record: StagedRecord) -> None:
        applied = await self._call(
            "conditional_update",
            lambda: self._store.conditional_update(
                table, record.key, expected=record.expected, values=record.values
            ),
        )
        if not applied:
            raise OptimisticWriteConflictError(table, record.key)

    async def _commit_record(self, checkpoint: MigrationCheckpoint, record: StagedRecord, key_column: str) -> str:
        attempt = 1
        current = record
        while True:
            try:
                await self._write_once(checkpoint.table, current)
                return RECORD_ENCRYPTED
            except OptimisticWriteConflictError:
                if attempt >= self._conflict_max_attempts:
                    logger.warning(
                        "migration_write_conflict_exhausted run_id=%s key=%s attempts=%s",
                        checkpoint.run_id,
                        record.key,
                        attempt,
                    )
                    record.error_code = "WRITE_CONFLICT"
                    return RECORD_FAILED
            except Exception as exc:  # noqa: BLE001 - one unwritable record is counted, not fatal
                logger.warning(
                    "migration_write_failed run_id=%s key=%s error=%s",
                    checkpoint.run_id,
                    record.key,
                    type(exc).__name__,
                )
                record.error_code = "WRITE_FAILED"
                return RECORD_FAILED
            # Re-read and re-stage only this record; the rest of the batch is unaffected.
            attempt += 1
            try:
                fresh = await self._call("get", lambda: self._store.get(checkpoint.table, record.key))
            except Exception as exc:  # noqa: BLE001
                logger.warning("migration_refetch_failed run_id=%s key=%s", checkpoint.run_id, record.key, exc_info=exc)
                record.error_code = "WRITE_FAILED"
                return RECORD_FAILED
            if fresh is None:
                return RECORD_SKIPPED
            current = await asyncio.to_thread(self._stage_record, checkpoint, fresh, key_column)
            if current.error_code is not None:
                record.error_code = current.error_code
                record.error_field = current.error_field
                return RECORD_FAILED
            if not current.has_updates:
                # A concurrent writer already stored ciphertext under the current key.
                return RECORD_SKIPPED

    async def rollback(self, run_id: str) -> int:
        checkpoint = await self._call("checkpoint_get", lambda: self._checkpoints.get(run_id))
        if checkpoint is None:
            raise MigrationNotFoundError(f"Unknown migration run {run_id}")
        # The persisted status is authoritative: a worker in another process may own the run.
        if not checkpoint.is_terminal or checkpoint.table in self._active_tables:
            raise MigrationInProgressError(f"Migration run {run_id} is still running")
        if checkpoint.snapshot_id is None:
            raise RollbackUnavailableError(f"Migration run {run_id} has no snapshot to restore")
        restored = await self._call_bulk("restore_snapshot", lambda: self._store.restore_snapshot(checkpoint.snapshot_id))
        checkpoint.rolled_back_at = utc_now()
        await self._save(checkpoint)
        record_event(
            self._audit,
            operation=OPERATION_MIGRATE,
            field=",".join(checkpoint.fields),
            record_id=None,
            outcome=OUTCOME_SUCCESS,
            table=checkpoint.table,
            metadata={"run_id": run_id, "action": "rollback", "restored": restored},
        )
        logger.info("migration_rolled_back run_id=%s restored=%s", run_id, restored)
        return restored
