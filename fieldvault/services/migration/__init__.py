from fieldvault.services.migration.checkpoint import (
    STATUS_ABORTED,
    STATUS_COMPLETED,
    STATUS_ENCRYPTING,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SCANNING,
    CheckpointStore,
    MigrationCheckpoint,
    MigrationCounts,
)
from fieldvault.services.migration.engine import MigrationEngine
from fieldvault.services.migration.store import EncryptedRecordStore, RecordStore

__all__ = [
    "STATUS_ABORTED",
    "STATUS_COMPLETED",
    "STATUS_ENCRYPTING",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "STATUS_SCANNING",
    "CheckpointStore",
    "EncryptedRecordStore",
    "MigrationCheckpoint",
    "MigrationCounts",
    "MigrationEngine",
    "RecordStore",
]
