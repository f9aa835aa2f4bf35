"""Algorithm identifiers and their normalization.

Algorithms are passed around as plain dicts shaped like Web Crypto algorithm
parameters, e.g. ``{"name": "AES-GCM", "iv": b"..."}``. A bare string is
shorthand for ``{"name": <string>}``.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Union

from cryptography.hazmat.primitives import hashes

from .errors import NotSupportedError

Algorithm = Union[str, Mapping[str, Any]]

PBKDF2 = "PBKDF2"
HKDF = "HKDF"
ARGON2ID = "Argon2id"
AES_GCM = "AES-GCM"
AES_CBC = "AES-CBC"
AES_CTR = "AES-CTR"
RSA_OAEP = "RSA-OAEP"

DERIVATION_ALGORITHMS = (PBKDF2, HKDF, ARGON2ID)
AES_ALGORITHMS = (AES_GCM, AES_CBC, AES_CTR)
ASYMMETRIC_ALGORITHMS = (RSA_OAEP,)

_CANONICAL = {
    name.upper(): name
    for name in DERIVATION_ALGORITHMS + AES_ALGORITHMS + ASYMMETRIC_ALGORITHMS
}

# Web Crypto digest names; hashlib spellings are accepted as aliases.
_HASHES = {
    "SHA-1": ("sha1", hashes.SHA1),
    "SHA-256": ("sha256", hashes.SHA256),
    "SHA-384": ("sha384", hashes.SHA384),
    "SHA-512": ("sha512", hashes.SHA512),
}
_HASH_ALIASES = {
    "SHA1": "SHA-1",
    "SHA256": "SHA-256",
    "SHA384": "SHA-384",
    "SHA512": "SHA-512",
}

# Key usages each algorithm family may carry.
ALLOWED_USAGES = {
    PBKDF2: frozenset({"deriveKey", "deriveBits"}),
    HKDF: frozenset({"deriveKey", "deriveBits"}),
    ARGON2ID: frozenset({"deriveKey", "deriveBits"}),
    AES_GCM: frozenset({"encrypt", "decrypt", "wrapKey", "unwrapKey"}),
    AES_CBC: frozenset({"encrypt", "decrypt", "wrapKey", "unwrapKey"}),
    AES_CTR: frozenset({"encrypt", "decrypt", "wrapKey", "unwrapKey"}),
}
RSA_PUBLIC_USAGES = frozenset({"encrypt", "wrapKey"})
RSA_PRIVATE_USAGES = frozenset({"decrypt", "unwrapKey"})


def normalize_algorithm(algorithm: Algorithm) -> Dict[str, Any]:
    """Return ``algorithm`` as a fresh dict with a canonical ``name``.

    Raises NotSupportedError for names this package does not implement.
    """
    if isinstance(algorithm, str):
        params: Dict[str, Any] = {"name": algorithm}
    elif isinstance(algorithm, Mapping) and "name" in algorithm:
        params = dict(algorithm)
    else:
        raise NotSupportedError(f"Algorithm must be a name or a mapping with a name: {algorithm!r}")

    name = str(params["name"])
    canonical = _CANONICAL.get(name.upper())
    if canonical is None:
        raise NotSupportedError(f"Unrecognized algorithm name: {name}")
    params["name"] = canonical

    if "hash" in params:
        params["hash"] = normalize_hash_name(params["hash"])
    return params


def normalize_hash_name(algorithm: Algorithm) -> str:
    name = algorithm if isinstance(algorithm, str) else algorithm.get("name", "")
    upper = str(name).upper()
    upper = _HASH_ALIASES.get(upper, upper)
    if upper not in _HASHES:
        raise NotSupportedError(f"Unrecognized hash algorithm: {name}")
    return upper


def hashlib_name(algorithm: Algorithm) -> str:
    return _HASHES[normalize_hash_name(algorithm)][0]


def hash_algorithm(algorithm: Algorithm) -> hashes.HashAlgorithm:
    """Return a ``cryptography`` hash instance for a digest name."""
    return _HASHES[normalize_hash_name(algorithm)][1]()
