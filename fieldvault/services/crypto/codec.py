from __future__ import annotations

import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from fieldvault.services.crypto.utils import b64url_decode, b64url_encode


# Stored form: fv1:<key_version>:<nonce>:<ciphertext>:<tag>, each binary part base64url without padding.
PAYLOAD_MARKER = "fv1"
NONCE_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
_SEPARATOR = ":"
_PART_COUNT = 5


@dataclass(frozen=True)
class EncodedPayload:
    version: int
    nonce: bytes
    ciphertext: bytes
    tag: bytes


class _NotEncoded(Enum):
    NOT_ENCODED = "not_encoded"

    def __bool__(self) -> bool:
        return False


NOT_ENCODED = _NotEncoded.NOT_ENCODED

DecodeResult = EncodedPayload | Literal[_NotEncoded.NOT_ENCODED]


def encode(version: int, nonce: bytes, ciphertext: bytes, tag: bytes) -> str:
    if version < 1:
        raise ValueError("key version must be positive")
    if len(nonce) != NONCE_SIZE_BYTES:
        raise ValueError(f"nonce must be {NONCE_SIZE_BYTES} bytes")
    if len(tag) != TAG_SIZE_BYTES:
        raise ValueError(f"tag must be {TAG_SIZE_BYTES} bytes")
    return _SEPARATOR.join(
        [
            PAYLOAD_MARKER,
            str(version),
            b64url_encode(nonce),
            b64url_encode(ciphertext),
            b64url_encode(tag),
        ]
    )


def encode_payload(payload: EncodedPayload) -> str:
    return encode(payload.version, payload.nonce, payload.ciphertext, payload.tag)


def decode(value: Any) -> DecodeResult:
    """Parse a stored value into an EncodedPayload.

    Total: anything that is not a well-formed payload (plaintext, legacy rows,
    truncated or garbled strings, non-strings) yields NOT_ENCODED.
    """
    if not isinstance(value, str) or not value.startswith(PAYLOAD_MARKER + _SEPARATOR):
        return NOT_ENCODED
    parts = value.split(_SEPARATOR)
    if len(parts) != _PART_COUNT:
        return NOT_ENCODED
    _marker, raw_version, raw_nonce, raw_ciphertext, raw_tag = parts
    if not raw_version.isascii() or not raw_version.isdigit():
        return NOT_ENCODED
    version = int(raw_version)
    if version < 1 or str(version) != raw_version:
        return NOT_ENCODED
    try:
        nonce = b64url_decode(raw_nonce)
        ciphertext = b64url_decode(raw_ciphertext)
        tag = b64url_decode(raw_tag)
    except (binascii.Error, ValueError):
        return NOT_ENCODED
    if len(nonce) != NONCE_SIZE_BYTES or len(tag) != TAG_SIZE_BYTES:
        return NOT_ENCODED
    return EncodedPayload(version=version, nonce=nonce, ciphertext=ciphertext, tag=tag)


def is_encoded(value: Any) -> bool:
    return decode(value) is not NOT_ENCODED
