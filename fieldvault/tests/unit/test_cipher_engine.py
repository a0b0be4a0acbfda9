from __future__ import annotations

import pytest

from fieldvault.core.errors import AuthenticationFailedError, KeyVersionNotFoundError
from fieldvault.services.crypto import codec
from fieldvault.services.crypto.cipher import CipherEngine
from fieldvault.services.crypto.codec import EncodedPayload
from fieldvault.tests.utils.crypto import make_registry


def _flip_bit(data: bytes, index: int = 0) -> bytes:
    mutable = bytearray(data)
    mutable[index] ^= 0x01
    return bytes(mutable)


def test_text_roundtrip_uses_current_key_version() -> None:
    cipher = CipherEngine(make_registry(1, 2))
    encrypted = cipher.encrypt_text("+15551234567")
    assert encrypted.startswith("fv1:2:")
    assert "+15551234567" not in encrypted
    assert cipher.decrypt_text(encrypted) == "+15551234567"


def test_unicode_roundtrip() -> None:
    cipher = CipherEngine(make_registry())
    value = "Zoë 👋 ☎ 555 日本"
    assert cipher.decrypt_text(cipher.encrypt_text(value)) == value


def test_same_plaintext_encrypts_to_different_payloads() -> None:
    cipher = CipherEngine(make_registry())
    first = cipher.encrypt_text("same value")
    second = cipher.encrypt_text("same value")
    assert first != second
    assert codec.decode(first).nonce != codec.decode(second).nonce


def test_none_and_empty_pass_through() -> None:
    cipher = CipherEngine(make_registry())
    assert cipher.encrypt_text(None) is None
    assert cipher.encrypt_text("") == ""
    assert cipher.decrypt_text(None) is None
    assert cipher.decrypt_text("") == ""


def test_plaintext_passes_through_decrypt() -> None:
    cipher = CipherEngine(make_registry())
    assert cipher.decrypt_text("+15551234567") == "+15551234567"


@pytest.mark.parametrize("part", ["nonce", "ciphertext", "tag"])
def test_any_flipped_bit_fails_authentication(part: str) -> None:
    cipher = CipherEngine(make_registry())
    payload = cipher.encrypt(b"sensitive-value")
    tampered = EncodedPayload(
        version=payload.version,
        nonce=_flip_bit(payload.nonce) if part == "nonce" else payload.nonce,
        ciphertext=_flip_bit(payload.ciphertext) if part == "ciphertext" else payload.ciphertext,
        tag=_flip_bit(payload.tag, 15) if part == "tag" else payload.tag,
    )
    with pytest.raises(AuthenticationFailedError):
        cipher.decrypt(tampered)


def test_relabelled_key_version_fails_authentication() -> None:
    # Same key bytes under two versions: only the version bound into the tag differs.
    from fieldvault.services.crypto.keys import KeyMaterial, KeyRegistry

    secret = bytes.fromhex("a1" * 32)
    registry = KeyRegistry([KeyMaterial(1, secret), KeyMaterial(2, secret, current=True)])
    cipher = CipherEngine(registry)
    payload = cipher.encrypt(b"value")
    relabelled = EncodedPayload(version=1, nonce=payload.nonce, ciphertext=payload.ciphertext, tag=payload.tag)
    with pytest.raises(AuthenticationFailedError):
        cipher.decrypt(relabelled)


def test_wrong_key_fails_authentication() -> None:
    encrypted = CipherEngine(make_registry(1)).encrypt_text("value")
    other = CipherEngine(make_registry(2))
    payload = codec.decode(encrypted)
    relabelled = EncodedPayload(version=2, nonce=payload.nonce, ciphertext=payload.ciphertext, tag=payload.tag)
    with pytest.raises(AuthenticationFailedError):
        other.decrypt(relabelled)


def test_unknown_version_raises_key_not_found() -> None:
    encrypted = CipherEngine(make_registry(1, 2, current=2)).encrypt_text("value")
    with pytest.raises(KeyVersionNotFoundError):
        CipherEngine(make_registry(1)).decrypt_text(encrypted)


def test_authentication_error_message_is_generic() -> None:
    cipher = CipherEngine(make_registry())
    payload = cipher.encrypt(b"secret-plaintext")
    tampered = EncodedPayload(payload.version, payload.nonce, payload.ciphertext, _flip_bit(payload.tag))
    with pytest.raises(AuthenticationFailedError) as excinfo:
        cipher.decrypt(tampered)
    assert "secret-plaintext" not in str(excinfo.value)
