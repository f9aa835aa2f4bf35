"""
Data models for storage configuration and the resolved per-instance context
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .config import DEFAULT_DB, DEFAULT_STORE_NAME, default_storage_root
from .exceptions import ConfigurationError
from ..database.connection import ObjectDatabase
from ..security import CryptoKey, is_binary
from ..security.algorithms import ARGON2ID
from ..security.kdf import ARGON2_MAX_TIME_COST

KEY_REQUIRED_MESSAGE = "Key is required."

Secret = Union[str, bytes, bytearray, CryptoKey]


@dataclass
class StorageConfig:
    """Caller input for an :class:`EncryptStorage` instance."""

    key: Optional[Secret] = None
    db: str = DEFAULT_DB
    name: str = DEFAULT_STORE_NAME
    salt: Optional[bytes] = None
    iterations: Optional[int] = None
    path: Union[str, Path, None] = None
    log: bool = False

    def __post_init__(self):
        self.validate()
        if self.path is None:
            self.path = default_storage_root()
        self.path = Path(self.path).expanduser()
        if self.salt is not None:
            self.salt = bytes(self.salt)

    def validate(self) -> None:
        key = self.key
        if key is None:
            raise ConfigurationError(KEY_REQUIRED_MESSAGE)
        if not isinstance(key, CryptoKey):
            if not (isinstance(key, str) or is_binary(key)) or len(key) == 0:
                raise ConfigurationError(KEY_REQUIRED_MESSAGE)
        for field_name in ("db", "name"):
            if not isinstance(getattr(self, field_name), str):
                raise ConfigurationError(f"{field_name} must be a string")
        if self.salt is not None and not is_binary(self.salt):
            raise ConfigurationError("Salt must be bytes")
        if self.iterations is not None:
            if isinstance(self.iterations, bool) or not isinstance(self.iterations, int) or self.iterations < 1:
                raise ConfigurationError("Iterations must be a positive integer")
            if (
                isinstance(key, CryptoKey)
                and key.algorithm["name"] == ARGON2ID
                and self.iterations > ARGON2_MAX_TIME_COST
            ):
                raise ConfigurationError(
                    f"Argon2id keys take iterations as time_cost (at most {ARGON2_MAX_TIME_COST})"
                )


@dataclass(frozen=True)
class ResolvedContext:
    """Everything an operation needs, computed once per storage instance."""

    store: ObjectDatabase
    name: str
    base_key: CryptoKey = field(repr=False)
    salt: bytes = field(repr=False)
    iterations: Optional[int] = None
