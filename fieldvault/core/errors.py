from __future__ import annotations


class FieldVaultError(Exception):
    """Base error for fieldvault."""


class KeyRegistryError(FieldVaultError):
    """Key registry configuration is missing or inconsistent."""


class InvalidKeyLengthError(KeyRegistryError):
    """Key material is not exactly 32 bytes."""


class KeyVersionNotFoundError(FieldVaultError):
    """No key is registered for the requested version."""

    def __init__(self, version: int) -> None:
        super().__init__(f"No key registered for version {version}")
        self.version = version


class AuthenticationFailedError(FieldVaultError):
    """Ciphertext could not be authenticated.

    The message is intentionally generic: tampering, a wrong key and corrupted
    storage all look the same to the caller.
    """

    def __init__(self) -> None:
        super().__init__("Unable to decrypt payload")


class PolicyConfigurationError(FieldVaultError):
    """Field policy declarations are invalid or conflicting."""


class FieldEncryptionError(FieldVaultError):
    """Encrypting a single field failed."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"Failed to encrypt field '{field}': {message}")
        self.field = field


class FieldDecryptionError(FieldVaultError):
    """Decrypting a single field failed; never substituted with a default value."""

    def __init__(self, field: str, message: str, *, code: str = "DECRYPTION_FAILED") -> None:
        super().__init__(f"Failed to decrypt field '{field}': {message}")
        self.field = field
        self.code = code


class StoreIOError(FieldVaultError):
    """Transient record store failure; retryable."""


class OptimisticWriteConflictError(FieldVaultError):
    """The record changed between read and conditional write."""

    def __init__(self, table: str, key: object) -> None:
        super().__init__(f"Record {key!r} in {table} changed since it was read")
        self.table = table
        self.key = key


class MigrationError(FieldVaultError):
    """Base error for migration runs."""


class MigrationAbortedError(MigrationError):
    """Run was cancelled by an operator."""


class MigrationFailedError(MigrationError):
    """Run stopped on a store outage or a configuration error."""


class MigrationNotFoundError(MigrationError):
    """No checkpoint exists for the requested run."""


class MigrationInProgressError(MigrationError):
    """Another run is already active for the same table."""


class RollbackUnavailableError(MigrationError):
    """Run has no snapshot to replay (dry-run or snapshots disabled)."""


class InvalidMigrationRequestError(MigrationError):
    """Operator supplied an out-of-range batch size or an empty field list."""
