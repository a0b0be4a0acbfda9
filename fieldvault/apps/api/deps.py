from __future__ import annotations

from fieldvault.services.crypto.encryptor import FieldEncryptor, get_field_encryptor
from fieldvault.services.migration.service import MigrationService, get_migration_service


def get_encryptor() -> FieldEncryptor:
    # Route-level seam so tests can override the process-wide encryptor.
    return get_field_encryptor()


def get_migrations() -> MigrationService:
    return get_migration_service()
