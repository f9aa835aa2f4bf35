"""Defaults shared by storage instances."""

import os
from pathlib import Path

DEFAULT_DB = "default-db"
DEFAULT_STORE_NAME = "default-storage-name"

# Address of the salt record is the digest of this string.
SALT_SENTINEL = "o-salt"

# Appended to a logical key to address the nonce of its value.
NONCE_SUFFIX = "-nonce"

STORAGE_HOME_ENV = "ENCRYPT_STORAGE_HOME"


def default_storage_root() -> Path:
    """Directory for database files: ``$ENCRYPT_STORAGE_HOME`` or ``~/.encrypt_storage``."""
    env = os.getenv(STORAGE_HOME_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".encrypt_storage"
