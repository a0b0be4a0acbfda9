from __future__ import annotations

import base64
import binascii

from fieldvault.core.errors import InvalidKeyLengthError, KeyRegistryError


def decode_key_material(value: str | bytes) -> bytes:
    """Decode hex or base64 key material into raw bytes.

    Raw ``bytes`` are returned untouched. Length is enforced by the key registry.
    """
    if isinstance(value, bytes):
        return value
    stripped = value.strip()
    if not stripped:
        raise InvalidKeyLengthError("key material is empty")
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        pass
    try:
        return base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError):
        pass
    try:
        return b64url_decode(stripped.rstrip("="))
    except (binascii.Error, ValueError) as exc:
        raise KeyRegistryError("key material must be base64 or hex") from exc


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64url_encode(value: bytes) -> str:
    # Unpadded url-safe base64 keeps encoded payloads free of ':' and '='.
    return base64.urlsafe_b64encode(value).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    if any(ch not in _URLSAFE_ALPHABET for ch in value):
        raise ValueError("invalid base64url character")
    if len(value) % 4 == 1:
        raise ValueError("invalid base64url length")
    return base64.urlsafe_b64decode(_pad(value).encode("ascii"))


_URLSAFE_ALPHABET = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


def _pad(value: str) -> str:
    return value + "=" * (-len(value) % 4)
