from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Mapping, Sequence
from uuid import uuid4

from sqlalchemy import MetaData, Table, and_, insert, select, update
from sqlalchemy.exc import InterfaceError, NoSuchTableError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fieldvault.core.errors import MigrationError, StoreIOError
from fieldvault.domain.models import MigrationRun, MigrationSnapshotRow
from fieldvault.persistence.repos import migration_runs as runs_repo
from fieldvault.services.migration.checkpoint import (
    RESUMABLE_STATUSES,
    MigrationCheckpoint,
    MigrationCounts,
)
from fieldvault.services.migration.store import Scope


logger = logging.getLogger(__name__)

SNAPSHOT_PAGE_SIZE = 500


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    # Connection-level failures are transient; everything else propagates unchanged.
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        logger.warning("sql_store_unavailable operation=%s error=%s", operation, type(exc).__name__)
        raise StoreIOError(f"{operation} failed: {type(exc).__name__}") from exc


def _wrap_key(key: Any) -> dict[str, Any] | None:
    return None if key is None else {"k": key}


def _unwrap_key(value: Mapping[str, Any] | None) -> Any:
    return None if not value else value.get("k")


def _aware(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlRecordStore:
    """RecordStore over arbitrary application tables, reflected on first use.

    Tables must have a single-column primary key; scans page by that key.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        key_columns: Mapping[str, str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._key_overrides = dict(key_columns or {})
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}

    def key_column(self, table: str) -> str:
        if table in self._key_overrides:
            return self._key_overrides[table]
        reflected = self._tables.get(table)
        if reflected is not None:
            return self._primary_key_name(reflected)
        return "id"

    def _primary_key_name(self, table: Table) -> str:
        name = self._key_overrides.get(table.name)
        if name:
            return name
        pk_columns = list(table.primary_key.columns)
        if len(pk_columns) != 1:
            raise MigrationError(f"Table {table.name} must have a single-column primary key")
        return pk_columns[0].name

    async def _table(self, session: AsyncSession, name: str) -> Table:
        cached = self._tables.get(name)
        if cached is not None:
            return cached
        connection = await session.connection()
        try:
            table = await connection.run_sync(
                lambda sync_conn: Table(name, self._metadata, autoload_with=sync_conn)
            )
        except NoSuchTableError as exc:
            raise MigrationError(f"Unknown table {name}") from exc
        self._primary_key_name(table)
        self._tables[name] = table
        return table

    def _scope_clauses(self, table: Table, scope: Scope | None) -> list[Any]:
        clauses = []
        for column, value in (scope or {}).items():
            if column not in table.c:
                raise MigrationError(f"Unknown scope column {column} on {table.name}")
            clauses.append(table.c[column] == value)
        return clauses

    async def scan(
        self,
        table: str,
        *,
        after: Any,
        limit: int,
        scope: Scope | None = None,
    ) -> list[dict[str, Any]]:
        async with _store_errors("scan"), self._session_factory() as session:
            reflected = await self._table(session, table)
            key = reflected.c[self._primary_key_name(reflected)]
            stmt = select(reflected).where(*self._scope_clauses(reflected, scope))
            if after is not None:
                stmt = stmt.where(key > after)
            result = await session.execute(stmt.order_by(key).limit(limit))
            return [dict(row._mapping) for row in result]

    async def get(self, table: str, key: Any) -> dict[str, Any] | None:
        async with _store_errors("get"), self._session_factory() as session:
            reflected = await self._table(session, table)
            key_col = reflected.c[self._primary_key_name(reflected)]
            result = await session.execute(select(reflected).where(key_col == key))
            row = result.first()
            return dict(row._mapping) if row is not None else None

    async def put(self, table: str, key: Any, values: Mapping[str, Any]) -> None:
        async with _store_errors("put"), self._session_factory() as session:
            reflected = await self._table(session, table)
            key_name = self._primary_key_name(reflected)
            payload = {name: value for name, value in values.items() if name != key_name}
            result = await session.execute(
                update(reflected).where(reflected.c[key_name] == key).values(**payload)
            )
            if not result.rowcount:
                await session.execute(insert(reflected).values(**{key_name: key}, **payload))
            await session.commit()

    async def conditional_update(
        self,
        table: str,
        key: Any,
        *,
        expected: Mapping[str, Any],
        values: Mapping[str, Any],
    ) -> bool:
        async with _store_errors("conditional_update"), self._session_factory() as session:
            reflected = await self._table(session, table)
            key_col = reflected.c[self._primary_key_name(reflected)]
            guards = [reflected.c[name] == value for name, value in expected.items()]
            result = await session.execute(
                update(reflected).where(and_(key_col == key, *guards)).values(**dict(values))
            )
            await session.commit()
            return result.rowcount == 1

    async def snapshot(self, table: str, *, fields: Sequence[str], scope: Scope | None = None) -> str:
        snapshot_id = uuid4().hex
        stored = 0
        async with _store_errors("snapshot"), self._session_factory() as session:
            reflected = await self._table(session, table)
            key_col = reflected.c[self._primary_key_name(reflected)]
            columns = [key_col, *(reflected.c[name] for name in fields if name in reflected.c)]
            after: Any = None
            while True:
                stmt = select(*columns).where(*self._scope_clauses(reflected, scope))
                if after is not None:
                    stmt = stmt.where(key_col > after)
                rows = (await session.execute(stmt.order_by(key_col).limit(SNAPSHOT_PAGE_SIZE))).all()
                if not rows:
                    break
                page = []
                for row in rows:
                    mapping = row._mapping
                    values = {name: mapping[name] for name in fields if name in mapping}
                    # Rows with nothing to migrate have nothing to restore.
                    if all(value is None or value == "" for value in values.values()):
                        continue
                    page.append(
                        MigrationSnapshotRow(
                            snapshot_id=snapshot_id,
                            table_name=table,
                            record_key_json=_wrap_key(mapping[key_col.name]),
                            values_json=values,
                        )
                    )
                await runs_repo.add_snapshot_rows(session, page)
                stored += len(page)
                after = rows[-1]._mapping[key_col.name]
            await session.commit()
        logger.info("snapshot_created snapshot_id=%s table=%s rows=%s", snapshot_id, table, stored)
        return snapshot_id

    async def restore_snapshot(self, snapshot_id: str) -> int:
        restored = 0
        async with _store_errors("restore_snapshot"), self._session_factory() as session:
            after_id = 0
            while True:
                rows = await runs_repo.list_snapshot_rows(
                    session, snapshot_id=snapshot_id, after_id=after_id, limit=SNAPSHOT_PAGE_SIZE
                )
                if not rows:
                    break
                for row in rows:
                    reflected = await self._table(session, row.table_name)
                    key_col = reflected.c[self._primary_key_name(reflected)]
                    result = await session.execute(
                        update(reflected)
                        .where(key_col == _unwrap_key(row.record_key_json))
                        .values(**row.values_json)
                    )
                    restored += result.rowcount or 0
                after_id = rows[-1].id
            await session.commit()
        logger.info("snapshot_restored snapshot_id=%s rows=%s", snapshot_id, restored)
        return restored


def _checkpoint_values(checkpoint: MigrationCheckpoint) -> dict[str, Any]:
    # No cancel_requested here: only request_cancel/clear_cancel write it.
    return {
        "table_name": checkpoint.table,
        "fields_json": sorted(checkpoint.fields),
        "scope_json": checkpoint.scope,
        "batch_size": checkpoint.batch_size,
        "dry_run": checkpoint.dry_run,
        "status": checkpoint.status,
        "last_processed_key_json": _wrap_key(checkpoint.last_processed_key),
        "scanned": checkpoint.counts.scanned,
        "encrypted": checkpoint.counts.encrypted,
        "skipped": checkpoint.counts.skipped,
        "failed": checkpoint.counts.failed,
        "snapshot_id": checkpoint.snapshot_id,
        "error_code": checkpoint.error_code,
        "error_message": checkpoint.error_message,
        "failures_json": list(checkpoint.failures),
        "started_at": checkpoint.started_at,
        "updated_at": checkpoint.updated_at,
        "completed_at": checkpoint.completed_at,
        "rolled_back_at": checkpoint.rolled_back_at,
    }


def _to_checkpoint(row: MigrationRun) -> MigrationCheckpoint:
    return MigrationCheckpoint(
        run_id=row.id,
        table=row.table_name,
        fields=list(row.fields_json or []),
        batch_size=row.batch_size,
        dry_run=bool(row.dry_run),
        scope=row.scope_json or None,
        status=row.status,
        last_processed_key=_unwrap_key(row.last_processed_key_json),
        counts=MigrationCounts(
            scanned=row.scanned,
            encrypted=row.encrypted,
            skipped=row.skipped,
            failed=row.failed,
        ),
        started_at=_aware(row.started_at),
        updated_at=_aware(row.updated_at),
        completed_at=_aware(row.completed_at),
        snapshot_id=row.snapshot_id,
        cancel_requested=bool(row.cancel_requested),
        rolled_back_at=_aware(row.rolled_back_at),
        error_code=row.error_code,
        error_message=row.error_message,
        failures=list(row.failures_json or []),
    )


class SqlCheckpointStore:
    """Durable CheckpointStore backed by the field_migration_runs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, checkpoint: MigrationCheckpoint) -> None:
        async with _store_errors("checkpoint_create"), self._session_factory() as session:
            run = MigrationRun(id=checkpoint.run_id, cancel_requested=False, **_checkpoint_values(checkpoint))
            await runs_repo.add_run(session, run)
            await session.commit()

    async def save(self, checkpoint: MigrationCheckpoint) -> None:
        async with _store_errors("checkpoint_save"), self._session_factory() as session:
            updated = await runs_repo.update_run(session, checkpoint.run_id, _checkpoint_values(checkpoint))
            if not updated:
                raise MigrationError(f"Migration run {checkpoint.run_id} does not exist")
            await session.commit()

    async def get(self, run_id: str) -> MigrationCheckpoint | None:
        async with _store_errors("checkpoint_get"), self._session_factory() as session:
            row = await runs_repo.get_run(session, run_id)
            return _to_checkpoint(row) if row is not None else None

    async def request_cancel(self, run_id: str) -> bool:
        async with _store_errors("checkpoint_request_cancel"), self._session_factory() as session:
            updated = await runs_repo.update_run(session, run_id, {"cancel_requested": True})
            await session.commit()
            return updated

    async def clear_cancel(self, run_id: str) -> None:
        async with _store_errors("checkpoint_clear_cancel"), self._session_factory() as session:
            await runs_repo.update_run(session, run_id, {"cancel_requested": False})
            await session.commit()

    async def find_resumable(
        self,
        *,
        table: str,
        fields: list[str],
        scope: dict[str, Any] | None,
        dry_run: bool,
    ) -> MigrationCheckpoint | None:
        async with _store_errors("checkpoint_find"), self._session_factory() as session:
            rows = await runs_repo.list_resumable_runs(
                session, table_name=table, statuses=RESUMABLE_STATUSES, dry_run=dry_run
            )
        for row in rows:
            checkpoint = _to_checkpoint(row)
            if checkpoint.matches(table=table, fields=fields, scope=scope, dry_run=dry_run):
                return checkpoint
        return None

    async def list_runs(self, *, table: str | None = None, limit: int = 50) -> list[MigrationCheckpoint]:
        async with _store_errors("checkpoint_list"), self._session_factory() as session:
            rows = await runs_repo.list_runs(session, table_name=table, limit=limit)
        return [_to_checkpoint(row) for row in rows]
