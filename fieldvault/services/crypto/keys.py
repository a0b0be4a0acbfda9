from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Iterable, Mapping

from fieldvault.core.config import get_settings
from fieldvault.core.errors import InvalidKeyLengthError, KeyRegistryError, KeyVersionNotFoundError
from fieldvault.services.crypto.utils import b64encode_bytes, decode_key_material


logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32


@dataclass(frozen=True)
class KeyMaterial:
    version: int
    # Keep secrets out of reprs so keys never end up in logs or tracebacks.
    secret: bytes = field(repr=False)
    current: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise KeyRegistryError(f"Key version must be a positive integer, got {self.version!r}")
        if len(self.secret) != KEY_SIZE_BYTES:
            raise InvalidKeyLengthError(
                f"Invalid key length for version {self.version}: "
                f"expected {KEY_SIZE_BYTES} bytes, got {len(self.secret)}"
            )


class KeyRegistry:
    """Read-only set of versioned AES-256 keys with exactly one current version.

    Old versions stay resolvable so payloads written before a rotation can
    still be decrypted. The registry never changes after construction, so it
    is safe to share across threads without locking.
    """

    def __init__(self, keys: Iterable[KeyMaterial]) -> None:
        materials = list(keys)
        if not materials:
            raise KeyRegistryError("At least one encryption key must be configured")
        by_version: dict[int, KeyMaterial] = {}
        for material in materials:
            if material.version in by_version:
                raise KeyRegistryError(f"Duplicate key version {material.version}")
            by_version[material.version] = material
        flagged = [material for material in materials if material.current]
        if not flagged and len(materials) == 1:
            # A single provisioned key is implicitly current.
            only = materials[0]
            flagged = [KeyMaterial(version=only.version, secret=only.secret, current=True)]
            by_version[only.version] = flagged[0]
        if len(flagged) != 1:
            raise KeyRegistryError(f"Exactly one key must be flagged current, found {len(flagged)}")
        self._by_version = by_version
        self._current = flagged[0]

    @classmethod
    def from_entries(cls, entries: Iterable[Mapping[str, Any]]) -> "KeyRegistry":
        # Accept the provisioning shape: {"version": 1, "key": "<base64|hex>", "current": true}.
        materials: list[KeyMaterial] = []
        for entry in entries:
            if "version" not in entry or "key" not in entry:
                raise KeyRegistryError("Key entries require 'version' and 'key'")
            version = entry["version"]
            if isinstance(version, str) and version.isdigit():
                version = int(version)
            materials.append(
                KeyMaterial(
                    version=version,
                    secret=decode_key_material(entry["key"]),
                    current=bool(entry.get("current", False)),
                )
            )
        return cls(materials)

    @classmethod
    def from_json(cls, raw: str) -> "KeyRegistry":
        try:
            entries = json.loads(raw or "[]")
        except json.JSONDecodeError as exc:
            raise KeyRegistryError("FIELDVAULT_KEYS must be a JSON list") from exc
        if not isinstance(entries, list):
            raise KeyRegistryError("FIELDVAULT_KEYS must be a JSON list")
        return cls.from_entries(entries)

    @property
    def current_version(self) -> int:
        return self._current.version

    @property
    def versions(self) -> list[int]:
        return sorted(self._by_version)

    def resolve_current(self) -> KeyMaterial:
        return self._current

    def resolve_by_version(self, version: int) -> KeyMaterial:
        material = self._by_version.get(version)
        if material is None:
            raise KeyVersionNotFoundError(version)
        return material


@lru_cache
def get_key_registry() -> KeyRegistry:
    # Build once per process from settings; call cache_clear() after changing keys in tests.
    registry = KeyRegistry.from_json(get_settings().fieldvault_keys)
    logger.info(
        "key_registry_loaded versions=%s current_version=%s",
        registry.versions,
        registry.current_version,
    )
    return registry


def generate_key_material() -> str:
    # Base64 of 32 random bytes, ready to paste into FIELDVAULT_KEYS.
    return b64encode_bytes(secrets.token_bytes(KEY_SIZE_BYTES))
