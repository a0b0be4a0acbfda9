from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Mapping

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from fieldvault.core.config import get_settings
from fieldvault.core.errors import (
    InvalidMigrationRequestError,
    MigrationInProgressError,
    MigrationNotFoundError,
)
from fieldvault.persistence.db import SessionLocal
from fieldvault.services.audit import AuditSink, LoggingAuditSink
from fieldvault.services.crypto.encryptor import FieldEncryptor, get_field_encryptor
from fieldvault.services.migration.checkpoint import CheckpointStore, MigrationCheckpoint
from fieldvault.services.migration.engine import MigrationEngine
from fieldvault.services.migration.sql_store import SqlCheckpointStore, SqlRecordStore
from fieldvault.services.migration.store import RecordStore


logger = logging.getLogger(__name__)

EXECUTION_MODE_INLINE = "inline"
EXECUTION_MODE_QUEUE = "queue"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class MigrationJobPayload(BaseModel):
    # API-to-worker handoff; the checkpoint row carries everything else.
    run_id: str


@dataclass(frozen=True)
class MigrationOptions:
    batch_size: int | None = None
    dry_run: bool = False
    scope: Mapping[str, Any] | None = None


@dataclass
class _InlineRun:
    task: asyncio.Task
    cancel_event: asyncio.Event


async def get_redis_pool():
    # Cache the Redis pool per event loop; tests spin up fresh loops.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.migration_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def build_migration_engine(
    store: RecordStore,
    checkpoints: CheckpointStore,
    *,
    encryptor: FieldEncryptor | None = None,
    audit_sink: AuditSink | None = None,
) -> MigrationEngine:
    settings = get_settings()
    return MigrationEngine(
        store,
        checkpoints,
        encryptor or get_field_encryptor(),
        conflict_max_attempts=settings.migration_conflict_max_attempts,
        snapshot_enabled=settings.migration_snapshot_enabled,
        max_workers=settings.crypto_batch_max_workers,
        audit_sink=audit_sink if audit_sink is not None else LoggingAuditSink(),
    )


class MigrationService:
    """Operator-facing control surface: start, status, cancel, rollback.

    Inline mode runs each migration as a task on the current event loop.
    Queue mode persists the checkpoint and hands the run id to the arq worker,
    which resumes it through ``execute``.
    """

    def __init__(
        self,
        engine: MigrationEngine,
        *,
        execution_mode: str = EXECUTION_MODE_INLINE,
        default_batch_size: int = 100,
        max_batch_size: int = 1000,
    ) -> None:
        self._engine = engine
        self._execution_mode = execution_mode.lower()
        self._default_batch_size = default_batch_size
        self._max_batch_size = max_batch_size
        self._inline: dict[str, _InlineRun] = {}

    @property
    def engine(self) -> MigrationEngine:
        return self._engine

    def _resolve_batch_size(self, batch_size: int | None) -> int:
        size = self._default_batch_size if batch_size is None else batch_size
        if size < 1 or size > self._max_batch_size:
            raise InvalidMigrationRequestError(
                f"batch_size must be between 1 and {self._max_batch_size}"
            )
        return size

    async def start(
        self,
        table: str,
        fields: list[str],
        options: MigrationOptions | None = None,
    ) -> MigrationCheckpoint:
        options = options or MigrationOptions()
        if not fields:
            raise InvalidMigrationRequestError("At least one field is required")
        batch_size = self._resolve_batch_size(options.batch_size)
        if self._engine.is_active(table):
            raise MigrationInProgressError(f"A migration is already running for {table}")
        checkpoint = await self._engine.prepare(
            table=table,
            fields=fields,
            batch_size=batch_size,
            dry_run=options.dry_run,
            scope=options.scope,
        )
        if self._execution_mode == EXECUTION_MODE_QUEUE:
            await self._enqueue(checkpoint.run_id)
            return checkpoint

        cancel_event = asyncio.Event()
        task = asyncio.create_task(self._run_inline(checkpoint, cancel_event))
        self._inline[checkpoint.run_id] = _InlineRun(task=task, cancel_event=cancel_event)
        # Yield once so the run claims its table before the caller returns.
        await asyncio.sleep(0)
        return checkpoint

    async def _run_inline(self, checkpoint: MigrationCheckpoint, cancel_event: asyncio.Event) -> MigrationCheckpoint:
        try:
            return await self._engine.run(checkpoint, cancel_event=cancel_event)
        except Exception:  # noqa: BLE001 - background task; status lives in the checkpoint
            logger.exception("migration_inline_run_failed run_id=%s", checkpoint.run_id)
            return checkpoint

    async def _enqueue(self, run_id: str) -> None:
        settings = get_settings()
        payload = MigrationJobPayload(run_id=run_id)
        redis = await get_redis_pool()
        await redis.enqueue_job(
            "run_field_migration",
            payload.model_dump(),
            _job_id=f"field-migration:{run_id}",
            _queue_name=settings.migration_queue_name,
        )
        logger.info("migration_enqueued run_id=%s queue=%s", run_id, settings.migration_queue_name)

    async def execute(self, run_id: str) -> MigrationCheckpoint:
        """Run (or resume) a persisted checkpoint to a terminal state in this process."""
        checkpoint = await self.status(run_id)
        return await self._engine.run(checkpoint)

    async def status(self, run_id: str) -> MigrationCheckpoint:
        checkpoint = await self._engine.checkpoints.get(run_id)
        if checkpoint is None:
            raise MigrationNotFoundError(f"Unknown migration run {run_id}")
        return checkpoint

    async def list_runs(self, *, table: str | None = None, limit: int = 50) -> list[MigrationCheckpoint]:
        return await self._engine.checkpoints.list_runs(table=table, limit=limit)

    async def cancel(self, run_id: str) -> MigrationCheckpoint:
        checkpoint = await self.status(run_id)
        if checkpoint.is_terminal:
            return checkpoint
        await self._engine.checkpoints.request_cancel(run_id)
        inline = self._inline.get(run_id)
        if inline is not None:
            inline.cancel_event.set()
        logger.info("migration_cancel_requested run_id=%s", run_id)
        return await self.status(run_id)

    async def rollback(self, run_id: str) -> int:
        inline = self._inline.get(run_id)
        if inline is not None and not inline.task.done():
            raise MigrationInProgressError(f"Migration run {run_id} is still running")
        return await self._engine.rollback(run_id)

    async def wait(self, run_id: str, timeout: float | None = None) -> MigrationCheckpoint:
        inline = self._inline.get(run_id)
        if inline is not None:
            await asyncio.wait_for(asyncio.shield(inline.task), timeout=timeout)
        return await self.status(run_id)


@lru_cache
def get_migration_service() -> MigrationService:
    settings = get_settings()
    engine = build_migration_engine(SqlRecordStore(SessionLocal), SqlCheckpointStore(SessionLocal))
    return MigrationService(
        engine,
        execution_mode=settings.migration_execution_mode,
        default_batch_size=settings.migration_batch_size,
        max_batch_size=settings.migration_max_batch_size,
    )
