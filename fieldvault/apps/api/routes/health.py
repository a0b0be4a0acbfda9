from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fieldvault.apps.api.deps import get_encryptor
from fieldvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from fieldvault.apps.api.response import SuccessEnvelope, success_response
from fieldvault.services.crypto.encryptor import FieldEncryptor

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class EncryptionHealthResponse(BaseModel):
    status: str
    algorithm: str
    key_loaded: bool
    current_version: int | None
    key_versions: list[int]
    selftest_ok: bool
    configured: bool
    tables: dict[str, list[str]]
    warnings: list[str]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict[str, Any]:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/encryption", response_model=SuccessEnvelope[EncryptionHealthResponse])
async def encryption_health(
    request: Request,
    encryptor: FieldEncryptor = Depends(get_encryptor),
) -> Any:
    # Readiness gate: a failed self-test or configuration warning reports 503.
    status = encryptor.encryption_status()
    configuration = encryptor.verify_configuration()
    selftest_ok = bool(status["test_passed"])
    healthy = selftest_ok and bool(configuration["configured"])
    payload = EncryptionHealthResponse(
        status="ok" if healthy else "degraded",
        algorithm=status["algorithm"],
        key_loaded=bool(status["key_loaded"]),
        current_version=status["current_version"],
        key_versions=list(status["versions"]),
        selftest_ok=selftest_ok,
        configured=bool(configuration["configured"]),
        tables=configuration["tables"],
        warnings=configuration["warnings"],
    )
    body = success_response(request=request, data=payload)
    if not healthy:
        return JSONResponse(content=body, status_code=503)
    return body
