"""Encoding, randomness and digest helpers shared by the security package."""

import hashlib
import os
from typing import Union

from .algorithms import Algorithm, hashlib_name

BytesLike = Union[bytes, bytearray, memoryview]
InputData = Union[str, bytes, bytearray, memoryview]

# 2^128 possible nonces; AES-GCM accepts any nonce of 8 bytes or more.
NONCE_SIZE = 16
# 2^64 possible salts.
SALT_SIZE = 8


def is_binary(data) -> bool:
    """Return True if ``data`` is a bytes-like object."""
    return isinstance(data, (bytes, bytearray, memoryview))


def encode(data: InputData) -> bytes:
    """Encode text as UTF-8; bytes-like input is returned as ``bytes``."""
    if is_binary(data):
        return bytes(data)
    return data.encode("utf-8")


def decode(data: InputData) -> str:
    """Decode UTF-8 bytes to text; text input is returned unchanged.

    Invalid sequences become U+FFFD instead of raising, so arbitrary digests
    can be turned into identifiers.
    """
    if isinstance(data, str):
        return data
    return bytes(data).decode("utf-8", errors="replace")


def generate_random_values(byte_size: int = SALT_SIZE) -> bytes:
    return os.urandom(byte_size)


def generate_nonce(byte_size: int = NONCE_SIZE) -> bytes:
    """Return a random nonce for a single encryption."""
    return generate_random_values(byte_size)


def generate_salt(byte_size: int = SALT_SIZE) -> bytes:
    """Return a random salt for key derivation."""
    return generate_random_values(byte_size)


def generate_hash(data: InputData, algorithm: Algorithm = "SHA-256") -> bytes:
    """Return the raw digest of ``data`` (text is UTF-8 encoded first)."""
    return hashlib.new(hashlib_name(algorithm), encode(data)).digest()
