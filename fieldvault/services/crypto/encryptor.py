from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Mapping, Sequence

from fieldvault.core.config import get_settings
from fieldvault.core.errors import (
    AuthenticationFailedError,
    FieldDecryptionError,
    FieldEncryptionError,
    FieldVaultError,
    KeyVersionNotFoundError,
)
from fieldvault.services.audit import (
    OPERATION_DECRYPT,
    OPERATION_ENCRYPT,
    OUTCOME_FAILURE,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    AuditSink,
    LoggingAuditSink,
    record_event,
)
from fieldvault.services.crypto import codec
from fieldvault.services.crypto.cipher import ALGORITHM, CipherEngine
from fieldvault.services.crypto.keys import get_key_registry
from fieldvault.services.crypto.policy import FieldPolicyRegistry, get_field_policy_registry


logger = logging.getLogger(__name__)

Record = Mapping[str, Any]


@dataclass(frozen=True)
class RecordOutcome:
    index: int
    record_id: str | None
    record: dict[str, Any] | None
    error_code: str | None = None
    error_message: str | None = None
    error_field: str | None = None

    @property
    def ok(self) -> bool:
        return self.error_code is None


@dataclass(frozen=True)
class BatchStats:
    total: int
    succeeded: int
    failed: int
    duration_ms: float


@dataclass(frozen=True)
class BatchResult:
    outcomes: list[RecordOutcome]
    stats: BatchStats

    @property
    def records(self) -> list[dict[str, Any]]:
        return [outcome.record for outcome in self.outcomes if outcome.record is not None]

    @property
    def failures(self) -> list[RecordOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    details: dict[str, Any] = field(default_factory=dict)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, FieldDecryptionError):
        return exc.code
    if isinstance(exc, FieldEncryptionError):
        return "ENCRYPTION_FAILED"
    return "UNEXPECTED_ERROR"


class FieldEncryptor:
    """Policy-aware encryption of named record fields.

    Every public method is stateless apart from the injected collaborators, so
    one instance can be shared between request handlers and worker threads.
    Audit: one event per sensitive field operation, including null/empty and
    legacy-plaintext pass-through (outcome ``skipped``); unknown and
    non-sensitive fields emit no event. Batch methods follow the same rule.
    """

    def __init__(
        self,
        cipher: CipherEngine,
        policy: FieldPolicyRegistry,
        *,
        audit_sink: AuditSink | None = None,
        max_workers: int = 4,
        record_id_key: str = "id",
        selftest_fixture: str = "fieldvault-selftest",
    ) -> None:
        self._cipher = cipher
        self._policy = policy
        self._audit = audit_sink
        self._max_workers = max(1, max_workers)
        self._record_id_key = record_id_key
        self._selftest_fixture = selftest_fixture

    @property
    def policy(self) -> FieldPolicyRegistry:
        return self._policy

    @property
    def cipher(self) -> CipherEngine:
        return self._cipher

    @property
    def current_version(self) -> int:
        return self._cipher.registry.current_version

    def _audit_event(
        self,
        operation: str,
        field_name: str,
        outcome: str,
        *,
        table: str | None,
        record_id: Any,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if metadata and not get_settings().crypto_audit_verbose:
            metadata = None
        record_event(
            self._audit,
            operation=operation,
            field=field_name,
            record_id=record_id,
            outcome=outcome,
            table=table,
            error_code=error_code,
            metadata=metadata,
        )

    def encrypt_field(
        self,
        value: str | None,
        field_name: str,
        *,
        table: str | None = None,
        record_id: Any = None,
    ) -> str | None:
        policy = self._policy.lookup(field_name)
        if policy is None:
            logger.warning("field_policy_mismatch operation=encrypt field=%s table=%s", field_name, table)
            return value
        if not policy.sensitive:
            return value
        if value is None or value == "":
            self._audit_event(OPERATION_ENCRYPT, field_name, OUTCOME_SKIPPED, table=table, record_id=record_id)
            return value
        if not isinstance(value, str):
            self._audit_event(
                OPERATION_ENCRYPT,
                field_name,
                OUTCOME_FAILURE,
                table=table,
                record_id=record_id,
                error_code="INVALID_VALUE_TYPE",
            )
            raise FieldEncryptionError(field_name, f"expected str, got {type(value).__name__}")
        if codec.is_encoded(value):
            # Already ciphertext; re-wrapping would make decrypt return a payload instead of plaintext.
            self._audit_event(
                OPERATION_ENCRYPT,
                field_name,
                OUTCOME_SKIPPED,
                table=table,
                record_id=record_id,
                metadata={"reason": "already_encrypted"},
            )
            return value
        try:
            encrypted = self._cipher.encrypt_text(value)
        except Exception as exc:  # noqa: BLE001 - surface a typed failure instead of partial output
            self._audit_event(
                OPERATION_ENCRYPT,
                field_name,
                OUTCOME_FAILURE,
                table=table,
                record_id=record_id,
                error_code="ENCRYPTION_FAILED",
            )
            raise FieldEncryptionError(field_name, "cipher failure") from exc
        self._audit_event(
            OPERATION_ENCRYPT,
            field_name,
            OUTCOME_SUCCESS,
            table=table,
            record_id=record_id,
            metadata={"key_version": self.current_version},
        )
        return encrypted

    def decrypt_field(
        self,
        value: str | None,
        field_name: str,
        *,
        table: str | None = None,
        record_id: Any = None,
    ) -> str | None:
        policy = self._policy.lookup(field_name)
        if policy is None or not policy.sensitive:
            if codec.is_encoded(value):
                # Ciphertext under a field the policy does not cover means the policies diverged; fail closed.
                self._audit_event(
                    OPERATION_DECRYPT,
                    field_name,
                    OUTCOME_FAILURE,
                    table=table,
                    record_id=record_id,
                    error_code="POLICY_MISMATCH",
                )
                raise FieldDecryptionError(
                    field_name,
                    "value is encrypted but the field is not declared sensitive",
                    code="POLICY_MISMATCH",
                )
            if policy is None:
                logger.warning("field_policy_mismatch operation=decrypt field=%s table=%s", field_name, table)
            return value
        if value is None or value == "":
            self._audit_event(OPERATION_DECRYPT, field_name, OUTCOME_SKIPPED, table=table, record_id=record_id)
            return value
        payload = codec.decode(value)
        if payload is codec.NOT_ENCODED:
            self._audit_event(
                OPERATION_DECRYPT,
                field_name,
                OUTCOME_SKIPPED,
                table=table,
                record_id=record_id,
                metadata={"reason": "not_encrypted"},
            )
            return value
        try:
            plaintext = self._cipher.decrypt(payload)
            decoded = plaintext.decode("utf-8")
        except KeyVersionNotFoundError as exc:
            self._fail_decrypt(field_name, "KEY_VERSION_NOT_FOUND", table=table, record_id=record_id)
            raise FieldDecryptionError(
                field_name, f"no key for version {exc.version}", code="KEY_VERSION_NOT_FOUND"
            ) from exc
        except (AuthenticationFailedError, UnicodeDecodeError) as exc:
            self._fail_decrypt(field_name, "AUTHENTICATION_FAILED", table=table, record_id=record_id)
            raise FieldDecryptionError(field_name, "unable to decrypt payload", code="AUTHENTICATION_FAILED") from exc
        self._audit_event(
            OPERATION_DECRYPT,
            field_name,
            OUTCOME_SUCCESS,
            table=table,
            record_id=record_id,
            metadata={"key_version": payload.version},
        )
        return decoded

    def _fail_decrypt(self, field_name: str, code: str, *, table: str | None, record_id: Any) -> None:
        logger.warning("field_decrypt_failed field=%s table=%s record_id=%s code=%s", field_name, table, record_id, code)
        self._audit_event(
            OPERATION_DECRYPT,
            field_name,
            OUTCOME_FAILURE,
            table=table,
            record_id=record_id,
            error_code=code,
        )

    def needs_rotation(self, value: Any) -> bool:
        payload = codec.decode(value)
        return payload is not codec.NOT_ENCODED and payload.version != self.current_version

    def reencrypt_field(
        self,
        value: str | None,
        field_name: str,
        *,
        table: str | None = None,
        record_id: Any = None,
    ) -> str | None:
        # Upgrade payloads written under an older key version; current-version values are returned as-is.
        if not self.needs_rotation(value):
            return value
        plaintext = self.decrypt_field(value, field_name, table=table, record_id=record_id)
        return self.encrypt_field(plaintext, field_name, table=table, record_id=record_id)

    def _sensitive_keys(self, record: Record, table: str | None) -> list[str]:
        if table is not None:
            return [name for name in self._policy.fields_for_table(table) if name in record]
        return [name for name in record if self._policy.is_sensitive(name)]

    def encrypt_record(self, record: Record, *, table: str | None = None) -> dict[str, Any]:
        result = dict(record)
        record_id = record.get(self._record_id_key)
        for field_name in self._sensitive_keys(record, table):
            result[field_name] = self.encrypt_field(record[field_name], field_name, table=table, record_id=record_id)
        return result

    def decrypt_record(self, record: Record, *, table: str | None = None) -> dict[str, Any]:
        result = dict(record)
        record_id = record.get(self._record_id_key)
        sensitive = set(self._sensitive_keys(record, table))
        for field_name, value in record.items():
            if field_name in sensitive:
                result[field_name] = self.decrypt_field(value, field_name, table=table, record_id=record_id)
            elif codec.is_encoded(value):
                self._audit_event(
                    OPERATION_DECRYPT,
                    field_name,
                    OUTCOME_FAILURE,
                    table=table,
                    record_id=record_id,
                    error_code="POLICY_MISMATCH",
                )
                raise FieldDecryptionError(
                    field_name,
                    "value is encrypted but the field is not covered by the active policy",
                    code="POLICY_MISMATCH",
                )
        return result

    def encrypt_batch(self, records: Sequence[Record], *, table: str | None = None) -> BatchResult:
        return self._run_batch(records, lambda record: self.encrypt_record(record, table=table))

    def decrypt_batch(self, records: Sequence[Record], *, table: str | None = None) -> BatchResult:
        return self._run_batch(records, lambda record: self.decrypt_record(record, table=table))

    def _run_batch(self, records: Sequence[Record], transform: Callable[[Record], dict[str, Any]]) -> BatchResult:
        started = time.monotonic()

        def _one(index: int) -> RecordOutcome:
            record = records[index]
            record_id = record.get(self._record_id_key)
            try:
                return RecordOutcome(
                    index=index,
                    record_id=str(record_id) if record_id is not None else None,
                    record=transform(record),
                )
            except FieldVaultError as exc:
                return RecordOutcome(
                    index=index,
                    record_id=str(record_id) if record_id is not None else None,
                    record=None,
                    error_code=_error_code(exc),
                    error_message=str(exc),
                    error_field=getattr(exc, "field", None),
                )

        if self._max_workers == 1 or len(records) <= 1:
            outcomes = [_one(index) for index in range(len(records))]
        else:
            with ThreadPoolExecutor(max_workers=min(self._max_workers, len(records))) as pool:
                outcomes = list(pool.map(_one, range(len(records))))
        failed = sum(1 for outcome in outcomes if not outcome.ok)
        stats = BatchStats(
            total=len(outcomes),
            succeeded=len(outcomes) - failed,
            failed=failed,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        if failed:
            logger.warning("field_batch_partial_failure total=%s failed=%s", stats.total, failed)
        return BatchResult(outcomes=outcomes, stats=stats)

    def verify_encryption(self) -> VerificationResult:
        # Readiness probe: full round trip through codec and cipher on a fixed, non-sensitive fixture.
        details: dict[str, Any] = {"algorithm": ALGORITHM}
        try:
            registry = self._cipher.registry
            details["current_version"] = registry.current_version
            details["versions"] = registry.versions
            encrypted = self._cipher.encrypt_text(self._selftest_fixture)
            payload = codec.decode(encrypted)
            if payload is codec.NOT_ENCODED:
                return VerificationResult(ok=False, details={**details, "error": "payload_not_decodable"})
            if payload.version != registry.current_version:
                return VerificationResult(ok=False, details={**details, "error": "unexpected_key_version"})
            if encrypted == self._selftest_fixture:
                return VerificationResult(ok=False, details={**details, "error": "ciphertext_equals_plaintext"})
            roundtrip = self._cipher.decrypt_text(encrypted)
            if roundtrip != self._selftest_fixture:
                return VerificationResult(ok=False, details={**details, "error": "roundtrip_mismatch"})
        except Exception as exc:  # noqa: BLE001 - probe reports instead of raising
            logger.warning("encryption_selftest_failed", exc_info=exc)
            return VerificationResult(ok=False, details={**details, "error": type(exc).__name__})
        return VerificationResult(ok=True, details=details)

    def encryption_status(self) -> dict[str, Any]:
        verification = self.verify_encryption()
        return {
            "key_loaded": "current_version" in verification.details,
            "current_version": verification.details.get("current_version"),
            "versions": verification.details.get("versions", []),
            "algorithm": ALGORITHM,
            "test_passed": verification.ok,
        }

    def verify_configuration(self) -> dict[str, Any]:
        warnings: list[str] = []
        tables = self._policy.describe()
        for table, fields in tables.items():
            if not fields:
                warnings.append(f"Table '{table}' has no encrypted fields configured")
        if not self.verify_encryption().ok:
            warnings.append("Encryption self-test failed")
        return {"configured": not warnings, "tables": tables, "warnings": warnings}


@lru_cache
def get_field_encryptor() -> FieldEncryptor:
    settings = get_settings()
    return FieldEncryptor(
        CipherEngine(get_key_registry()),
        get_field_policy_registry(),
        audit_sink=LoggingAuditSink(),
        max_workers=settings.crypto_batch_max_workers,
        selftest_fixture=settings.crypto_selftest_fixture,
    )


def reset_crypto_caches() -> None:
    # Allow tests and key reloads to rebuild registries after settings change.
    get_settings.cache_clear()
    get_key_registry.cache_clear()
    get_field_policy_registry.cache_clear()
    get_field_encryptor.cache_clear()
