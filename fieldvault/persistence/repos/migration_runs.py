from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fieldvault.domain.models import MigrationRun, MigrationSnapshotRow


async def add_run(session: AsyncSession, run: MigrationRun) -> MigrationRun:
    session.add(run)
    return run


async def get_run(session: AsyncSession, run_id: str) -> MigrationRun | None:
    result = await session.execute(select(MigrationRun).where(MigrationRun.id == run_id))
    return result.scalar_one_or_none()


async def update_run(session: AsyncSession, run_id: str, values: dict[str, Any]) -> bool:
    result = await session.execute(update(MigrationRun).where(MigrationRun.id == run_id).values(**values))
    return (result.rowcount or 0) > 0


async def list_resumable_runs(
    session: AsyncSession,
    *,
    table_name: str,
    statuses: Iterable[str],
    dry_run: bool,
) -> list[MigrationRun]:
    # Rolled-back runs are closed for good; newest candidates first.
    stmt = (
        select(MigrationRun)
        .where(
            MigrationRun.table_name == table_name,
            MigrationRun.status.in_(list(statuses)),
            MigrationRun.dry_run == dry_run,
            MigrationRun.rolled_back_at.is_(None),
        )
        .order_by(MigrationRun.started_at.desc(), MigrationRun.id.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_runs(session: AsyncSession, *, table_name: str | None = None, limit: int = 50) -> list[MigrationRun]:
    stmt = select(MigrationRun)
    if table_name:
        stmt = stmt.where(MigrationRun.table_name == table_name)
    stmt = stmt.order_by(MigrationRun.started_at.desc(), MigrationRun.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def add_snapshot_rows(session: AsyncSession, rows: list[MigrationSnapshotRow]) -> None:
    session.add_all(rows)


async def list_snapshot_rows(
    session: AsyncSession,
    *,
    snapshot_id: str,
    after_id: int = 0,
    limit: int = 500,
) -> list[MigrationSnapshotRow]:
    # Page by surrogate id so large snapshots restore in bounded memory.
    stmt = (
        select(MigrationSnapshotRow)
        .where(MigrationSnapshotRow.snapshot_id == snapshot_id, MigrationSnapshotRow.id > after_id)
        .order_by(MigrationSnapshotRow.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())
