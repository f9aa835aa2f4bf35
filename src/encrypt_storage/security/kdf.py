from typing import Any, Dict

from argon2.exceptions import Argon2Error
from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .algorithms import ARGON2ID, HKDF as HKDF_NAME, PBKDF2, hash_algorithm
from .errors import DataError, NotSupportedError
from .utils import encode

DEFAULT_ITERATIONS = 100_000
DEFAULT_HASH = "SHA-256"
# time_cost is a pass count, not a PBKDF2-scale iteration count
ARGON2_MAX_TIME_COST = 100


def derive_pbkdf2(
    secret: bytes,
    salt: bytes,
    iterations: int = DEFAULT_ITERATIONS,
    hash_name: str = DEFAULT_HASH,
    length: int = 32,
) -> bytes:
    """Derive ``length`` bytes from ``secret`` with PBKDF2-HMAC."""
    if int(iterations) < 1:
        raise DataError("PBKDF2 iterations must be a positive integer")
    kdf = PBKDF2HMAC(
        algorithm=hash_algorithm(hash_name),
        length=length,
        salt=salt,
        iterations=int(iterations),
    )
    return kdf.derive(secret)


def derive_hkdf(
    secret: bytes,
    salt: bytes = b"",
    info: bytes = b"",
    hash_name: str = DEFAULT_HASH,
    length: int = 32,
) -> bytes:
    hkdf = HKDF(algorithm=hash_algorithm(hash_name), length=length, salt=salt or None, info=info)
    return hkdf.derive(secret)


def derive_argon2id(
    secret: bytes,
    salt: bytes,
    time_cost: int = 3,
    memory_cost: int = 65536,
    parallelism: int = 1,
    length: int = 32,
) -> bytes:
    """
    Derive key bytes from a secret using Argon2id.
    Argon2 needs a salt of at least 8 bytes.
    """
    try:
        return hash_secret_raw(
            secret=secret,
            salt=salt,
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=length,
            type=Type.ID,
        )
    except Argon2Error as e:
        raise DataError(f"Argon2id derivation failed: {e}")


def derive_bits(params: Dict[str, Any], secret: bytes, length: int) -> bytes:
    """Run the derivation described by normalized ``params`` over ``secret``."""
    name = params["name"]
    if name == PBKDF2:
        if "salt" not in params:
            raise DataError("PBKDF2 parameters require a salt")
        return derive_pbkdf2(
            secret,
            encode(params["salt"]),
            iterations=params.get("iterations") or DEFAULT_ITERATIONS,
            hash_name=params.get("hash", DEFAULT_HASH),
            length=length,
        )
    if name == HKDF_NAME:
        return derive_hkdf(
            secret,
            salt=encode(params.get("salt", b"")),
            info=encode(params.get("info", b"")),
            hash_name=params.get("hash", DEFAULT_HASH),
            length=length,
        )
    if name == ARGON2ID:
        if "salt" not in params:
            raise DataError("Argon2id parameters require a salt")
        return derive_argon2id(
            secret,
            encode(params["salt"]),
            time_cost=int(params.get("time_cost", 3)),
            memory_cost=int(params.get("memory_cost", 65536)),
            parallelism=int(params.get("parallelism", 1)),
            length=length,
        )
    raise NotSupportedError(f"{name} is not a key derivation algorithm")
