"""Key derivation and encrypt/decrypt over :class:`CryptoKey` handles.

Default scheme:
- PBKDF2-HMAC-SHA-256 base key -> AES-GCM 256-bit key, never extractable
- a fresh 16-byte nonce per encryption, returned next to the ciphertext
- the 16-byte GCM tag is appended to the ciphertext

Callers may pass full algorithm dicts instead of a salt / iteration count /
nonce to pick other schemes (AES-CBC, AES-CTR, RSA-OAEP, HKDF, Argon2id).
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding as sym_padding
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .algorithms import (
    AES_ALGORITHMS,
    AES_CBC,
    AES_CTR,
    AES_GCM,
    ALLOWED_USAGES,
    PBKDF2,
    RSA_OAEP,
    Algorithm,
    hash_algorithm,
    normalize_algorithm,
)
from .errors import DataError, InvalidAccessError, NotSupportedError, OperationError
from .kdf import DEFAULT_HASH, DEFAULT_ITERATIONS, derive_bits
from .keys import AES_KEY_SIZES, CryptoKey, key_material, require_usage
from .utils import InputData, encode, generate_nonce, is_binary

DEFAULT_TARGET = {"name": AES_GCM, "length": 256}
GCM_TAG_BITS = 128


def derive_key(
    key: CryptoKey,
    salt_or_algorithm: Union[InputData, Mapping[str, Any]],
    iterations_or_algorithm: Union[int, Mapping[str, Any], None] = None,
    usages: Iterable[str] = ("encrypt", "decrypt"),
) -> CryptoKey:
    """
    Derive a non-extractable symmetric key from a base key.

    ``salt_or_algorithm`` is either a raw salt (PBKDF2 with SHA-256 and
    ``DEFAULT_ITERATIONS``) or a full derivation dict such as
    ``{"name": "PBKDF2", "salt": ..., "iterations": 100, "hash": "SHA-1"}``.
    ``iterations_or_algorithm`` is either an iteration count for the default
    PBKDF2 derivation or a target dict such as ``{"name": "AES-CBC", "length": 256}``.
    """
    require_usage(key, "deriveKey")

    if isinstance(salt_or_algorithm, Mapping):
        derive = normalize_algorithm(salt_or_algorithm)
    else:
        derive = {
            "name": PBKDF2,
            "salt": encode(salt_or_algorithm),
            "iterations": DEFAULT_ITERATIONS,
            "hash": DEFAULT_HASH,
        }
        if isinstance(iterations_or_algorithm, int) and not isinstance(iterations_or_algorithm, bool):
            derive["iterations"] = iterations_or_algorithm

    if derive["name"] != key.algorithm["name"]:
        raise InvalidAccessError(
            f"Base key is a {key.algorithm['name']} key, cannot derive with {derive['name']}"
        )

    if isinstance(iterations_or_algorithm, Mapping):
        target = normalize_algorithm(iterations_or_algorithm)
    else:
        target = dict(DEFAULT_TARGET)
    if target["name"] not in AES_ALGORITHMS:
        raise NotSupportedError(f"Cannot derive a {target['name']} key")
    length = int(target.get("length", 256))
    if length % 8 or length // 8 not in AES_KEY_SIZES:
        raise DataError(f"Derived key length must be 128, 192 or 256, got {length}")

    usages = tuple(usages)
    bad = [u for u in usages if u not in ALLOWED_USAGES[target["name"]]]
    if not usages or bad:
        raise InvalidAccessError(f"Invalid usages for a derived {target['name']} key: {list(usages)}")

    bits = derive_bits(derive, key_material(key), length // 8)
    return CryptoKey("secret", {"name": target["name"], "length": length}, usages, False, bits)


def _nonce_of(params: Dict[str, Any]) -> Optional[bytes]:
    nonce = params.get("iv", params.get("counter"))
    return bytes(nonce) if nonce is not None else None


def _require_nonce(params: Dict[str, Any], member: str) -> bytes:
    value = params.get(member)
    if not is_binary(value):
        raise DataError(f"{params['name']} requires '{member}' bytes")
    return bytes(value)


def _check_key_algorithm(key: CryptoKey, params: Dict[str, Any]) -> None:
    if key.algorithm["name"] != params["name"]:
        raise InvalidAccessError(
            f"Key is bound to {key.algorithm['name']}, not {params['name']}"
        )


def _aes_gcm(params, material: bytes, data: bytes, encrypting: bool) -> bytes:
    if int(params.get("tagLength", GCM_TAG_BITS)) != GCM_TAG_BITS:
        raise NotSupportedError("Only 128-bit AES-GCM tags are supported")
    iv = _require_nonce(params, "iv")
    aad = params.get("additionalData")
    aad = encode(aad) if aad is not None else None
    aead = AESGCM(material)
    try:
        if encrypting:
            return aead.encrypt(iv, data, aad)
        return aead.decrypt(iv, data, aad)
    except InvalidTag:
        raise OperationError("AES-GCM authentication tag mismatch")
    except ValueError as e:
        raise DataError(f"Invalid AES-GCM parameters: {e}")


def _aes_cbc(params, material: bytes, data: bytes, encrypting: bool) -> bytes:
    iv = _require_nonce(params, "iv")
    if len(iv) != 16:
        raise DataError("AES-CBC iv must be 16 bytes")
    cipher = Cipher(algorithms.AES(material), modes.CBC(iv))
    if encrypting:
        padder = sym_padding.PKCS7(128).padder()
        padded = padder.update(data) + padder.finalize()
        encryptor = cipher.encryptor()
        return encryptor.update(padded) + encryptor.finalize()
    try:
        decryptor = cipher.decryptor()
        padded = decryptor.update(data) + decryptor.finalize()
        unpadder = sym_padding.PKCS7(128).unpadder()
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError:
        raise OperationError("AES-CBC decryption failed (bad padding or length)")


def _aes_ctr(params, material: bytes, data: bytes, encrypting: bool) -> bytes:
    counter = _require_nonce(params, "counter")
    if len(counter) != 16:
        raise DataError("AES-CTR counter must be 16 bytes")
    cipher = Cipher(algorithms.AES(material), modes.CTR(counter))
    ctx = cipher.encryptor() if encrypting else cipher.decryptor()
    return ctx.update(data) + ctx.finalize()


def _rsa_oaep(params, key: CryptoKey, data: bytes, encrypting: bool) -> bytes:
    digest = hash_algorithm(key.algorithm.get("hash", DEFAULT_HASH))
    label = params.get("label")
    oaep = asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=digest),
        algorithm=digest,
        label=encode(label) if label is not None else None,
    )
    material = key_material(key)
    if encrypting:
        try:
            return material.encrypt(data, oaep)
        except ValueError as e:
            raise DataError(f"RSA-OAEP encryption failed: {e}")
    try:
        return material.decrypt(data, oaep)
    except ValueError:
        raise OperationError("RSA-OAEP decryption failed")


def _apply(params: Dict[str, Any], key: CryptoKey, data: bytes, encrypting: bool) -> bytes:
    name = params["name"]
    if name == AES_GCM:
        return _aes_gcm(params, key_material(key), data, encrypting)
    if name == AES_CBC:
        return _aes_cbc(params, key_material(key), data, encrypting)
    if name == AES_CTR:
        return _aes_ctr(params, key_material(key), data, encrypting)
    if name == RSA_OAEP:
        return _rsa_oaep(params, key, data, encrypting)
    raise NotSupportedError(f"{name} cannot encrypt or decrypt")


def encrypt(
    data: InputData,
    key: CryptoKey,
    algorithm: Optional[Algorithm] = None,
) -> Tuple[bytes, Optional[bytes]]:
    """
    Encrypt ``data`` and return ``(ciphertext, nonce)``.

    Without ``algorithm`` the key's own cipher is used with a fresh nonce.
    With an explicit algorithm dict its ``iv``/``counter`` is returned as the
    nonce, or ``None`` for schemes that carry none (RSA-OAEP).
    """
    require_usage(key, "encrypt")
    if algorithm is None:
        name = key.algorithm["name"]
        params: Dict[str, Any] = {"name": name}
        if name == AES_CTR:
            params["counter"] = generate_nonce()
        elif name in AES_ALGORITHMS:
            params["iv"] = generate_nonce()
    else:
        params = normalize_algorithm(algorithm)
    _check_key_algorithm(key, params)

    ciphertext = _apply(params, key, encode(data), encrypting=True)
    return ciphertext, _nonce_of(params)


def decrypt(
    data: InputData,
    key: CryptoKey,
    nonce_or_algorithm: Union[InputData, Mapping[str, Any], None] = None,
) -> bytes:
    """
    Decrypt ``data`` and return the plaintext bytes.

    A raw nonce is wrapped into the key's own cipher; a dict is used as the
    full algorithm. Raises OperationError when the key, nonce or data do not
    match what produced the ciphertext.
    """
    require_usage(key, "decrypt")
    name = key.algorithm["name"]
    if isinstance(nonce_or_algorithm, Mapping):
        params = normalize_algorithm(nonce_or_algorithm)
    elif nonce_or_algorithm is None:
        params = {"name": name}
    else:
        member = "counter" if name == AES_CTR else "iv"
        params = {"name": name, member: encode(nonce_or_algorithm)}
    _check_key_algorithm(key, params)

    return _apply(params, key, encode(data), encrypting=False)
