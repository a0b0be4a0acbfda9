from fieldvault.services.crypto.cipher import ALGORITHM, CipherEngine
from fieldvault.services.crypto.codec import NOT_ENCODED, EncodedPayload, decode, encode, is_encoded
from fieldvault.services.crypto.encryptor import (
    BatchResult,
    BatchStats,
    FieldEncryptor,
    RecordOutcome,
    VerificationResult,
    get_field_encryptor,
    reset_crypto_caches,
)
from fieldvault.services.crypto.keys import KeyMaterial, KeyRegistry, get_key_registry
from fieldvault.services.crypto.policy import FieldPolicy, FieldPolicyRegistry, get_field_policy_registry

__all__ = [
    "ALGORITHM",
    "BatchResult",
    "BatchStats",
    "CipherEngine",
    "EncodedPayload",
    "FieldEncryptor",
    "FieldPolicy",
    "FieldPolicyRegistry",
    "KeyMaterial",
    "KeyRegistry",
    "NOT_ENCODED",
    "RecordOutcome",
    "VerificationResult",
    "decode",
    "encode",
    "get_field_encryptor",
    "get_field_policy_registry",
    "get_key_registry",
    "is_encoded",
    "reset_crypto_caches",
]
