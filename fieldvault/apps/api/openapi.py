from __future__ import annotations

from typing import Any

from fieldvault.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }


def _error(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error("Bad request", "INVALID_MIGRATION_REQUEST", "batch_size must be between 1 and 1000"),
    404: _error("Not found", "MIGRATION_NOT_FOUND", "Unknown migration run"),
    409: _error("Conflict", "MIGRATION_IN_PROGRESS", "A migration is already running for contacts"),
    422: _error("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _error("Service unavailable", "STORE_UNAVAILABLE", "Record store unavailable"),
}
