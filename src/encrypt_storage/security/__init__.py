"""Security helpers: the crypto utility layer of encrypt_storage.

This package provides small, stateless wrappers for:
- text/bytes encoding, random values and digests
- importing key material as non-extractable key handles
- PBKDF2 (default), HKDF and Argon2id key derivation
- authenticated encryption (AES-GCM by default) with per-call nonces

Nothing in here knows about storage.
"""

from .utils import (
    NONCE_SIZE,
    SALT_SIZE,
    decode,
    encode,
    generate_hash,
    generate_nonce,
    generate_random_values,
    generate_salt,
    is_binary,
)
from .keys import CryptoKey, CryptoKeyPair, generate_key, import_key
from .kdf import DEFAULT_ITERATIONS
from .crypto import decrypt, derive_key, encrypt
from .errors import CryptoError, DataError, InvalidAccessError, NotSupportedError, OperationError

__all__ = [
    "NONCE_SIZE",
    "SALT_SIZE",
    "DEFAULT_ITERATIONS",
    "encode",
    "decode",
    "is_binary",
    "generate_random_values",
    "generate_nonce",
    "generate_salt",
    "generate_hash",
    "CryptoKey",
    "CryptoKeyPair",
    "import_key",
    "generate_key",
    "derive_key",
    "encrypt",
    "decrypt",
    "CryptoError",
    "OperationError",
    "InvalidAccessError",
    "NotSupportedError",
    "DataError",
]
