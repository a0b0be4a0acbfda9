from __future__ import annotations

import pytest

from fieldvault.services.crypto.encryptor import reset_crypto_caches
from fieldvault.tests.utils.crypto import keys_env


@pytest.fixture(autouse=True)
def crypto_settings(monkeypatch: pytest.MonkeyPatch):
    # Every test starts from a known single-key configuration and fresh cached registries.
    monkeypatch.setenv("FIELDVAULT_KEYS", keys_env(1))
    monkeypatch.setenv("FIELDVAULT_FIELD_POLICIES", "")
    monkeypatch.setenv("CRYPTO_AUDIT_VERBOSE", "false")
    reset_crypto_caches()
    yield
    reset_crypto_caches()
