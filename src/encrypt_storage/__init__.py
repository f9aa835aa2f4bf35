"""Encrypted key-value storage: hashed keys, AES-GCM values, PBKDF2-derived keys."""

from .core.exceptions import (
    AuthenticityError,
    ConfigurationError,
    EncryptStorageError,
    StorageClosedError,
    StorageError,
)
from .core.models import ResolvedContext, StorageConfig
from .core.storage import AUTHENTICITY_ERROR_MESSAGE, EncryptStorage
from .database.connection import DatabaseFactory, ObjectDatabase

__all__ = [
    "EncryptStorage",
    "StorageConfig",
    "ResolvedContext",
    "DatabaseFactory",
    "ObjectDatabase",
    "AUTHENTICITY_ERROR_MESSAGE",
    "EncryptStorageError",
    "ConfigurationError",
    "AuthenticityError",
    "StorageError",
    "StorageClosedError",
]

__version__ = "1.0.0"
