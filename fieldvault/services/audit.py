from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import threading
from typing import Any, Protocol


logger = logging.getLogger(__name__)

OPERATION_ENCRYPT = "encrypt"
OPERATION_DECRYPT = "decrypt"
OPERATION_MIGRATE = "migrate"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_SKIPPED = "skipped"

_SENSITIVE_KEY_PATTERNS = ["secret", "token", "password", "authorization", "plaintext", "ciphertext", "api_key"]
_REDACTED_VALUE = "[REDACTED]"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    operation: str
    field: str | None
    record_id: str | None
    outcome: str
    timestamp: datetime = field(default_factory=_utc_now)
    table: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "field": self.field,
            "record_id": self.record_id,
            "outcome": self.outcome,
            "timestamp": self.timestamp.isoformat(),
            "table": self.table,
            "error_code": self.error_code,
            "metadata": self.metadata,
        }


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None:
        ...


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def record_event(
    sink: AuditSink | None,
    *,
    operation: str,
    field: str | None,
    record_id: Any,
    outcome: str,
    table: str | None = None,
    error_code: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    # Emit audit events best-effort; a broken sink never fails the field operation.
    if sink is None:
        return
    event = AuditEvent(
        operation=operation,
        field=field,
        record_id=str(record_id) if record_id is not None else None,
        outcome=outcome,
        table=table,
        error_code=error_code,
        metadata=sanitize_metadata(metadata or {}),
    )
    try:
        sink.emit(event)
    except Exception as exc:  # noqa: BLE001 - audit delivery must not break crypto paths
        logger.warning(
            "audit_event_emit_failed operation=%s field=%s record_id=%s",
            operation,
            field,
            event.record_id,
            exc_info=exc,
        )


class LoggingAuditSink:
    """Writes audit events as structured log lines for the external collector."""

    def __init__(self, logger_name: str = "fieldvault.audit") -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: AuditEvent) -> None:
        self._logger.info(
            "audit_event operation=%s table=%s field=%s record_id=%s outcome=%s error_code=%s",
            event.operation,
            event.table,
            event.field,
            event.record_id,
            event.outcome,
            event.error_code,
        )


class InMemoryAuditSink:
    """Buffers events in memory with filtered queries and summary statistics.

    Thread-safe so it can receive events from batch worker threads.
    """

    def __init__(self, max_events: int | None = 10000) -> None:
        self._events: list[AuditEvent] = []
        self._max_events = max_events
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)
            if self._max_events is not None and len(self._events) > self._max_events:
                del self._events[: len(self._events) - self._max_events]

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def filter(
        self,
        *,
        operation: str | None = None,
        table: str | None = None,
        field: str | None = None,
        outcome: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[AuditEvent]:
        matched: list[AuditEvent] = []
        for event in self.events:
            if operation is not None and event.operation != operation:
                continue
            if table is not None and event.table != table:
                continue
            if field is not None and event.field != field:
                continue
            if outcome is not None and event.outcome != outcome:
                continue
            if since is not None and event.timestamp < since:
                continue
            if until is not None and event.timestamp > until:
                continue
            matched.append(event)
        return matched

    def statistics(self) -> dict[str, Any]:
        events = self.events
        total = len(events)
        outcomes = Counter(event.outcome for event in events)
        successes = outcomes[OUTCOME_SUCCESS]
        failures = outcomes[OUTCOME_FAILURE]
        # Skipped operations are no-ops and stay out of the success rate.
        attempted = successes + failures
        return {
            "total_operations": total,
            "successful_operations": successes,
            "failed_operations": failures,
            "skipped_operations": outcomes[OUTCOME_SKIPPED],
            "success_rate": (successes / attempted) * 100.0 if attempted else 0.0,
            "operations_by_type": dict(Counter(event.operation for event in events)),
            "operations_by_table": dict(Counter(event.table for event in events if event.table)),
        }
