from __future__ import annotations

import logging

from arq.connections import RedisSettings

from fieldvault.core.config import get_settings
from fieldvault.core.logging import configure_logging
from fieldvault.services.migration.service import MigrationJobPayload, get_migration_service


logger = logging.getLogger(__name__)


async def run_field_migration(ctx, payload: dict) -> str:
    # Resume the persisted checkpoint; a cancel request is read back from the same row.
    job_payload = MigrationJobPayload.model_validate(payload)
    service = ctx.get("migration_service") or get_migration_service()
    checkpoint = await service.execute(job_payload.run_id)
    logger.info(
        "migration_job_finished run_id=%s status=%s attempt=%s",
        checkpoint.run_id,
        checkpoint.status,
        ctx.get("job_try", 1),
    )
    return checkpoint.status


async def _startup(ctx) -> None:
    configure_logging()
    ctx["migration_service"] = get_migration_service()


async def _shutdown(ctx) -> None:
    ctx.pop("migration_service", None)


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.migration_queue_name
    # Failed runs are terminal in the checkpoint and resumed by a new start, not by arq retries.
    max_tries = 1
    # Large tables take a while; the engine enforces its own per-call timeouts.
    job_timeout = 24 * 60 * 60
    functions = [run_field_migration]
    on_startup = _startup
    on_shutdown = _shutdown
