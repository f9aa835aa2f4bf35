"""Key handles and key import.

A :class:`CryptoKey` wraps key material together with the algorithm it is
bound to and the operations it may be used for. Derivation keys (PBKDF2,
HKDF, Argon2id) are never extractable; other keys are extractable only when
the caller asks for it.
"""

from __future__ import annotations

import base64
import os
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional, Tuple, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .algorithms import (
    AES_ALGORITHMS,
    ALLOWED_USAGES,
    ASYMMETRIC_ALGORITHMS,
    DERIVATION_ALGORITHMS,
    PBKDF2,
    RSA_OAEP,
    RSA_PRIVATE_USAGES,
    RSA_PUBLIC_USAGES,
    Algorithm,
    normalize_algorithm,
)
from .errors import DataError, InvalidAccessError, NotSupportedError
from .utils import InputData, encode, is_binary

AES_KEY_SIZES = (16, 24, 32)

KeyMaterial = Union[InputData, Mapping[str, Any]]


class CryptoKey:
    """Opaque key handle; the material itself is not part of the public surface."""

    __slots__ = ("type", "_algorithm", "usages", "extractable", "_material")

    def __init__(self, key_type: str, algorithm: Dict[str, Any], usages: Iterable[str],
                 extractable: bool, material):
        self.type = key_type
        self._algorithm = dict(algorithm)
        self.usages = tuple(usages)
        self.extractable = bool(extractable)
        self._material = material

    @property
    def algorithm(self) -> Dict[str, Any]:
        return dict(self._algorithm)

    def allows(self, usage: str) -> bool:
        return usage in self.usages

    def export_key(self) -> bytes:
        """Return raw bytes (secret keys) or PEM (RSA keys) if the key is extractable."""
        if not self.extractable:
            raise InvalidAccessError("Key is not extractable")
        if self.type == "secret":
            return bytes(self._material)
        if self.type == "public":
            return self._material.public_bytes(
                serialization.Encoding.PEM,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        return self._material.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def __repr__(self) -> str:
        return (
            f"CryptoKey(type={self.type!r}, algorithm={self._algorithm!r}, "
            f"usages={list(self.usages)!r}, extractable={self.extractable})"
        )


class CryptoKeyPair(NamedTuple):
    public_key: CryptoKey
    private_key: CryptoKey


def key_material(key: CryptoKey):
    # internal accessor for the primitive calls in this package
    return key._material


def require_usage(key: CryptoKey, usage: str) -> None:
    if not isinstance(key, CryptoKey):
        raise InvalidAccessError(f"Expected a CryptoKey, got {type(key).__name__}")
    if not key.allows(usage):
        raise InvalidAccessError(
            f"Key usages {list(key.usages)} do not permit '{usage}'"
        )


def _check_usages(usages: Tuple[str, ...], allowed: frozenset, name: str) -> None:
    if not usages:
        raise InvalidAccessError(f"Usages cannot be empty when importing a {name} key")
    bad = [u for u in usages if u not in allowed]
    if bad:
        raise InvalidAccessError(f"Unsupported key usages for {name}: {bad}")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise DataError(f"Invalid base64url value in JWK: {e}")


def _b64url_int(value: str) -> int:
    return int.from_bytes(_b64url_decode(value), "big")


def _rsa_from_jwk(jwk: Mapping[str, Any]):
    if jwk.get("kty") != "RSA":
        raise DataError("JWK 'kty' must be 'RSA' for RSA-OAEP keys")
    try:
        public_numbers = rsa.RSAPublicNumbers(_b64url_int(jwk["e"]), _b64url_int(jwk["n"]))
        if "d" not in jwk:
            return public_numbers.public_key()
        private_numbers = rsa.RSAPrivateNumbers(
            p=_b64url_int(jwk["p"]),
            q=_b64url_int(jwk["q"]),
            d=_b64url_int(jwk["d"]),
            dmp1=_b64url_int(jwk["dp"]),
            dmq1=_b64url_int(jwk["dq"]),
            iqmp=_b64url_int(jwk["qi"]),
            public_numbers=public_numbers,
        )
        return private_numbers.private_key()
    except KeyError as e:
        raise DataError(f"JWK is missing member {e}")
    except ValueError as e:
        raise DataError(f"Invalid RSA key parameters: {e}")


def _rsa_from_bytes(raw: bytes, fmt: str):
    pem = raw.lstrip().startswith(b"-----")
    try:
        if fmt == "spki":
            if pem:
                return serialization.load_pem_public_key(raw)
            return serialization.load_der_public_key(raw)
        if pem:
            return serialization.load_pem_private_key(raw, password=None)
        return serialization.load_der_private_key(raw, password=None)
    except (ValueError, TypeError) as e:
        raise DataError(f"Could not load {fmt} key: {e}")


def _import_rsa(raw: KeyMaterial, params: Dict[str, Any], usages, fmt: str, extractable: bool) -> CryptoKey:
    if fmt == "jwk":
        if not isinstance(raw, Mapping):
            raise DataError("JWK import expects a mapping")
        material = _rsa_from_jwk(raw)
    elif fmt in ("spki", "pkcs8"):
        material = _rsa_from_bytes(encode(raw), fmt)
    else:
        raise NotSupportedError(f"Format '{fmt}' is not supported for {RSA_OAEP}")

    if isinstance(material, rsa.RSAPublicKey):
        key_type, allowed, public = "public", RSA_PUBLIC_USAGES, material
    elif isinstance(material, rsa.RSAPrivateKey):
        key_type, allowed, public = "private", RSA_PRIVATE_USAGES, material.public_key()
    else:
        raise DataError("Key material is not an RSA key")
    _check_usages(usages, allowed, RSA_OAEP)

    algorithm = {
        "name": RSA_OAEP,
        "hash": params.get("hash", "SHA-256"),
        "modulusLength": public.key_size,
    }
    return CryptoKey(key_type, algorithm, usages, extractable, material)


def import_key(
    raw: KeyMaterial,
    algorithm: Algorithm = PBKDF2,
    usages: Iterable[str] = ("deriveKey",),
    format: Optional[str] = None,
    extractable: bool = False,
) -> CryptoKey:
    """
    Import key material as a :class:`CryptoKey`.

    ``raw`` may be text (UTF-8 encoded), bytes, or a JWK mapping. ``format``
    defaults to ``"jwk"`` for mappings and ``"raw"`` otherwise; RSA-OAEP keys
    also accept ``"spki"`` and ``"pkcs8"`` in PEM or DER.

    The default is a PBKDF2 base key that can only be used to derive other
    keys, which is how storage secrets are imported.
    """
    params = normalize_algorithm(algorithm)
    name = params["name"]
    usages = tuple(usages)
    if format is None:
        format = "jwk" if isinstance(raw, Mapping) else "raw"

    if name in ASYMMETRIC_ALGORITHMS:
        return _import_rsa(raw, params, usages, format, extractable)

    _check_usages(usages, ALLOWED_USAGES[name], name)

    if name in DERIVATION_ALGORITHMS:
        if format != "raw":
            raise NotSupportedError(f"Format '{format}' is not supported for {name}")
        if extractable:
            raise InvalidAccessError(f"{name} keys cannot be extractable")
        if not (isinstance(raw, str) or is_binary(raw)):
            raise DataError(f"{name} key material must be text or bytes")
        return CryptoKey("secret", {"name": name}, usages, False, encode(raw))

    # AES family
    if format == "jwk":
        if not isinstance(raw, Mapping) or raw.get("kty") != "oct" or "k" not in raw:
            raise DataError("JWK for a symmetric key must have kty 'oct' and a 'k' member")
        material = _b64url_decode(raw["k"])
    elif format == "raw":
        if not (isinstance(raw, str) or is_binary(raw)):
            raise DataError(f"{name} key material must be text or bytes")
        material = encode(raw)
    else:
        raise NotSupportedError(f"Format '{format}' is not supported for {name}")

    if len(material) not in AES_KEY_SIZES:
        raise DataError(f"{name} key must be 128, 192 or 256 bits, got {len(material) * 8}")
    return CryptoKey("secret", {"name": name, "length": len(material) * 8}, usages, extractable, material)


def generate_key(algorithm: Algorithm, usages: Iterable[str], extractable: bool = False):
    """
    Generate a fresh AES key or an RSA-OAEP key pair.

    AES algorithms read ``length`` (default 256). RSA-OAEP reads
    ``modulusLength`` (default 2048), ``publicExponent`` (bytes, default 65537)
    and ``hash``; it returns a :class:`CryptoKeyPair` whose public half is
    always extractable.
    """
    params = normalize_algorithm(algorithm)
    name = params["name"]
    usages = tuple(usages)

    if name in AES_ALGORITHMS:
        _check_usages(usages, ALLOWED_USAGES[name], name)
        length = int(params.get("length", 256))
        if length // 8 not in AES_KEY_SIZES or length % 8:
            raise DataError(f"{name} key length must be 128, 192 or 256, got {length}")
        return CryptoKey("secret", {"name": name, "length": length}, usages,
                         extractable, os.urandom(length // 8))

    if name == RSA_OAEP:
        exponent = params.get("publicExponent", 65537)
        if is_binary(exponent):
            exponent = int.from_bytes(bytes(exponent), "big")
        private = rsa.generate_private_key(
            public_exponent=exponent, key_size=int(params.get("modulusLength", 2048))
        )
        algo = {
            "name": RSA_OAEP,
            "hash": params.get("hash", "SHA-256"),
            "modulusLength": private.key_size,
        }
        public_usages = tuple(u for u in usages if u in RSA_PUBLIC_USAGES)
        private_usages = tuple(u for u in usages if u in RSA_PRIVATE_USAGES)
        return CryptoKeyPair(
            CryptoKey("public", algo, public_usages, True, private.public_key()),
            CryptoKey("private", algo, private_usages, extractable, private),
        )

    raise NotSupportedError(f"Key generation is not supported for {name}")
