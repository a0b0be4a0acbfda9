from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fieldvault.apps.api.response import error_response
from fieldvault.core.errors import (
    FieldVaultError,
    InvalidMigrationRequestError,
    MigrationInProgressError,
    MigrationNotFoundError,
    PolicyConfigurationError,
    RollbackUnavailableError,
    StoreIOError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_DOMAIN_ERRORS: list[tuple[type[FieldVaultError], int, str]] = [
    (MigrationNotFoundError, 404, "MIGRATION_NOT_FOUND"),
    (MigrationInProgressError, 409, "MIGRATION_IN_PROGRESS"),
    (RollbackUnavailableError, 409, "ROLLBACK_UNAVAILABLE"),
    (InvalidMigrationRequestError, 400, "INVALID_MIGRATION_REQUEST"),
    (PolicyConfigurationError, 400, "POLICY_MISMATCH"),
    (StoreIOError, 503, "STORE_UNAVAILABLE"),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def to_http_exception(exc: FieldVaultError) -> HTTPException:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)})
    # Key and cipher errors never echo their message back to API callers.
    return HTTPException(status_code=500, detail={"code": "INTERNAL_ERROR", "message": "Internal server error"})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def fieldvault_exception_handler(request: Request, exc: FieldVaultError) -> JSONResponse:
    http_exc = to_http_exception(exc)
    if http_exc.status_code >= 500:
        logger.error("request_failed path=%s error=%s", request.url.path, type(exc).__name__, exc_info=exc)
    return await http_exception_handler(request, http_exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("request_unhandled path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
