from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from fieldvault.apps.api.deps import get_migrations
from fieldvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldvault.apps.api.response import SuccessEnvelope, success_response
from fieldvault.services.migration.checkpoint import MigrationCheckpoint
from fieldvault.services.migration.service import MigrationOptions, MigrationService


router = APIRouter(prefix="/admin/migrations", tags=["migrations"], responses=DEFAULT_ERROR_RESPONSES)


class StartMigrationRequest(BaseModel):
    table: str = Field(min_length=1, max_length=128)
    fields: list[str] = Field(min_length=1)
    batch_size: int | None = Field(default=None, ge=1)
    dry_run: bool = False
    # Equality filters on plain columns, e.g. {"tenant_id": "t-1"}.
    scope: dict[str, str | int | bool] | None = None


class MigrationCountsResponse(BaseModel):
    scanned: int
    encrypted: int
    skipped: int
    failed: int


class MigrationRunResponse(BaseModel):
    run_id: str
    table: str
    fields: list[str]
    status: str
    dry_run: bool
    batch_size: int
    scope: dict[str, Any] | None
    last_processed_key: Any
    counts: MigrationCountsResponse
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    snapshot_id: str | None
    cancel_requested: bool
    rolled_back_at: datetime | None
    error_code: str | None
    error_message: str | None
    failures: list[dict[str, Any]]


class RollbackResponse(BaseModel):
    run_id: str
    restored: int


def _run_payload(checkpoint: MigrationCheckpoint) -> MigrationRunResponse:
    return MigrationRunResponse(
        run_id=checkpoint.run_id,
        table=checkpoint.table,
        fields=list(checkpoint.fields),
        status=checkpoint.status,
        dry_run=checkpoint.dry_run,
        batch_size=checkpoint.batch_size,
        scope=checkpoint.scope,
        last_processed_key=checkpoint.last_processed_key,
        counts=MigrationCountsResponse(**checkpoint.counts.as_dict()),
        started_at=checkpoint.started_at,
        updated_at=checkpoint.updated_at,
        completed_at=checkpoint.completed_at,
        snapshot_id=checkpoint.snapshot_id,
        cancel_requested=checkpoint.cancel_requested,
        rolled_back_at=checkpoint.rolled_back_at,
        error_code=checkpoint.error_code,
        error_message=checkpoint.error_message,
        failures=list(checkpoint.failures),
    )


@router.post("", status_code=202, response_model=SuccessEnvelope[MigrationRunResponse])
async def start_migration(
    request: Request,
    payload: StartMigrationRequest,
    service: MigrationService = Depends(get_migrations),
) -> dict[str, Any]:
    # Starting the same target again resumes the interrupted run instead of creating a new one.
    checkpoint = await service.start(
        payload.table,
        payload.fields,
        MigrationOptions(batch_size=payload.batch_size, dry_run=payload.dry_run, scope=payload.scope),
    )
    return success_response(request=request, data=_run_payload(checkpoint))


@router.get("", response_model=SuccessEnvelope[list[MigrationRunResponse]])
async def list_migrations(
    request: Request,
    table: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    service: MigrationService = Depends(get_migrations),
) -> dict[str, Any]:
    runs = await service.list_runs(table=table, limit=limit)
    return success_response(
        request=request,
        data=[_run_payload(run).model_dump(mode="json") for run in runs],
    )


@router.get("/{run_id}", response_model=SuccessEnvelope[MigrationRunResponse])
async def get_migration(
    request: Request,
    run_id: str,
    service: MigrationService = Depends(get_migrations),
) -> dict[str, Any]:
    checkpoint = await service.status(run_id)
    return success_response(request=request, data=_run_payload(checkpoint))


@router.post("/{run_id}/cancel", response_model=SuccessEnvelope[MigrationRunResponse])
async def cancel_migration(
    request: Request,
    run_id: str,
    service: MigrationService = Depends(get_migrations),
) -> dict[str, Any]:
    # Takes effect at the next batch boundary; terminal runs are returned unchanged.
    checkpoint = await service.cancel(run_id)
    return success_response(request=request, data=_run_payload(checkpoint))


@router.post("/{run_id}/rollback", response_model=SuccessEnvelope[RollbackResponse])
async def rollback_migration(
    request: Request,
    run_id: str,
    service: MigrationService = Depends(get_migrations),
) -> dict[str, Any]:
    restored = await service.rollback(run_id)
    return success_response(request=request, data=RollbackResponse(run_id=run_id, restored=restored))
