from __future__ import annotations

import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from fieldvault.core.errors import AuthenticationFailedError
from fieldvault.services.crypto import codec
from fieldvault.services.crypto.codec import NONCE_SIZE_BYTES, TAG_SIZE_BYTES, EncodedPayload
from fieldvault.services.crypto.keys import KeyRegistry


logger = logging.getLogger(__name__)

ALGORITHM = "aes256gcm"


def _aad(version: int) -> bytes:
    # Bind the key version into the tag so a payload cannot be relabelled to another version.
    return f"{codec.PAYLOAD_MARKER}:{version}".encode("ascii")


class CipherEngine:
    """AES-256-GCM over byte payloads, keyed by a KeyRegistry.

    Holds no mutable state; one instance can serve any number of threads.
    """

    def __init__(self, registry: KeyRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> KeyRegistry:
        return self._registry

    def encrypt(self, plaintext: bytes) -> EncodedPayload:
        key = self._registry.resolve_current()
        nonce = os.urandom(NONCE_SIZE_BYTES)
        ciphertext_with_tag = AESGCM(key.secret).encrypt(nonce, plaintext, _aad(key.version))
        return EncodedPayload(
            version=key.version,
            nonce=nonce,
            ciphertext=ciphertext_with_tag[:-TAG_SIZE_BYTES],
            tag=ciphertext_with_tag[-TAG_SIZE_BYTES:],
        )

    def decrypt(self, payload: EncodedPayload) -> bytes:
        # KeyVersionNotFoundError propagates; a missing key is never treated as plaintext.
        key = self._registry.resolve_by_version(payload.version)
        try:
            return AESGCM(key.secret).decrypt(
                payload.nonce,
                payload.ciphertext + payload.tag,
                _aad(payload.version),
            )
        except (InvalidTag, ValueError) as exc:
            raise AuthenticationFailedError() from exc

    def encrypt_text(self, value: str | None) -> str | None:
        if value is None or value == "":
            return value
        return codec.encode_payload(self.encrypt(value.encode("utf-8")))

    def decrypt_text(self, value: str | None) -> str | None:
        if value is None or value == "":
            return value
        payload = codec.decode(value)
        if payload is codec.NOT_ENCODED:
            # Legacy plaintext rows pass through during migration windows.
            return value
        plaintext = self.decrypt(payload)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailedError() from exc
