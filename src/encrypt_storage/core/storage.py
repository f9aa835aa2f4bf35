"""
Encrypted key-value storage on top of the SQLite object store

Layout of one table, for reference:
==============================
 - digest("o-salt")          -> salt used for key derivation
 - digest(key)               -> AES-GCM ciphertext of the value
 - digest(key + "-nonce")    -> nonce used for that ciphertext
==============================
> The table itself is named after the digest of the caller's table name, and
  the database file after the digest of the caller's database name.
> The salt is written once per table and then always read back, so every
  instance built from the same secret, salt and iteration count derives the
  same key and can read what the others wrote.
> A different secret, salt or iteration count produces a different key, and
  reads fail the AES-GCM tag check with AuthenticityError instead of
  returning garbage.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Optional, Tuple, Union

from .config import NONCE_SUFFIX, SALT_SENTINEL
from .exceptions import AuthenticityError, StorageClosedError
from .models import ResolvedContext, StorageConfig
from ..database.connection import DatabaseFactory, ObjectDatabase
from ..security import (
    CryptoError,
    CryptoKey,
    decode,
    decrypt,
    derive_key,
    encrypt,
    generate_hash,
    generate_salt,
    import_key,
    is_binary,
)
from ..security.algorithms import ARGON2ID, HKDF, PBKDF2

logger = logging.getLogger(__name__)

AUTHENTICITY_ERROR_MESSAGE = "Authenticity check failed."

StorageKey = Union[str, bytes]
StorageValue = Union[str, bytes]


def nonce_key(key: StorageKey) -> StorageKey:
    """Return the logical key under which the nonce of ``key`` is stored."""
    if isinstance(key, str):
        return key + NONCE_SUFFIX
    return bytes(key) + NONCE_SUFFIX.encode("utf-8")


def salt_slot() -> bytes:
    return generate_hash(SALT_SENTINEL)


async def resolve_salt(store: ObjectDatabase, name: str, salt: Optional[bytes] = None) -> bytes:
    """
    Return the salt of table ``name``, writing one if the table has none.

    A stored salt always wins over ``salt``. When the slot is empty, ``salt``
    (or a fresh random salt) is inserted only if no concurrent writer got
    there first, and whatever ends up stored is returned.
    """
    slot = salt_slot()
    existing = await store.get(name, slot)
    if existing is not None:
        return bytes(existing)

    candidate = bytes(salt) if salt is not None else generate_salt()
    if await store.add(name, slot, candidate):
        return candidate
    return bytes(await store.get(name, slot))


def _check_key(key) -> None:
    if not (isinstance(key, str) or is_binary(key)):
        raise TypeError(f"Storage keys must be str or bytes, not {type(key).__name__}")


class EncryptStorage:
    """
    Key-value storage that encrypts values and hashes keys before they hit disk.

    Build it with a :class:`StorageConfig` or the same fields as keyword
    arguments::

        storage = EncryptStorage(key="secret", db="app", name="tokens")
        await storage.set("refresh", "abc")
        assert await storage.get("refresh") == "abc"

    Construction fails with ConfigurationError when no key is given. Opening
    the database and resolving the salt happens once, in the background when
    an event loop is running or on first use otherwise, and every operation
    awaits that same result.

    ``iterations`` is the PBKDF2 iteration count for text and byte secrets.
    An HKDF ``CryptoKey`` ignores it. An Argon2id ``CryptoKey`` uses it as the
    Argon2 ``time_cost`` (passes over memory), so it must stay small; values
    above ``ARGON2_MAX_TIME_COST`` are rejected at construction.
    """

    def __init__(self, config: Optional[StorageConfig] = None, **options):
        if config is None:
            config = StorageConfig(**options)
        elif options:
            config = dataclasses.replace(config, **options)
        self._config = config
        self._factory = DatabaseFactory(config.path)
        self._context_task: Optional[asyncio.Future] = None
        self._key_task: Optional[asyncio.Future] = None
        self._closed = False
        self._destroyed = False

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._context_task = loop.create_task(self._init())
            # failures are re-raised to whichever operation awaits the task
            self._context_task.add_done_callback(_consume_exception)

    @property
    def config(self) -> StorageConfig:
        return self._config

    @property
    def state(self) -> str:
        if self._destroyed:
            return "destroyed"
        if self._closed:
            return "closed"
        if self._context_task is None:
            return "uninitialized"
        if not self._context_task.done():
            return "resolving"
        return "ready"

    def _debug(self, msg: str, *args) -> None:
        if self._config.log:
            logger.debug(msg, *args)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def _open_store(self, db_name: str, name: str) -> ObjectDatabase:
        def upgrade(db: ObjectDatabase, old_version: int, new_version: int) -> None:
            if name not in db.object_store_names:
                db.create_object_store(name)

        # other tables may live in this database already; a missing table bumps the version
        return await self._factory.open(db_name, None, upgrade, required=(name,))

    async def _init(self) -> ResolvedContext:
        cfg = self._config
        db_hash = generate_hash(cfg.db)
        store_hash = generate_hash(cfg.name)
        base_key = cfg.key if isinstance(cfg.key, CryptoKey) else import_key(cfg.key)

        name = decode(store_hash)
        store = await self._open_store(decode(db_hash), name)
        try:
            salt = await resolve_salt(store, name, cfg.salt)
        except BaseException:
            store.close()
            raise

        if cfg.salt is not None and salt != cfg.salt:
            self._debug("table already has a salt; the configured salt is ignored")
        self._debug("storage resolved (db version %d)", store.version)
        return ResolvedContext(store, name, base_key, salt, cfg.iterations)

    async def _context(self) -> ResolvedContext:
        if self._context_task is None:
            self._context_task = asyncio.ensure_future(self._init())
        return await asyncio.shield(self._context_task)

    async def resolve(self) -> ResolvedContext:
        """Return the resolved context, waiting for resolution if needed."""
        if self._closed or self._destroyed:
            raise StorageClosedError("Storage has been closed")
        return await self._context()

    async def _crypto_key(self, ctx: ResolvedContext) -> CryptoKey:
        base_key = ctx.base_key
        name = base_key.algorithm["name"]
        if not base_key.allows("deriveKey"):
            # already a cipher key; use it as-is
            return base_key

        if self._key_task is None:
            if name == PBKDF2:
                args = (base_key, ctx.salt, ctx.iterations)
            elif name == HKDF:
                args = (base_key, {"name": HKDF, "salt": ctx.salt, "info": b""})
            else:
                # Argon2id: the iteration count maps onto its time cost
                params = {"name": ARGON2ID, "salt": ctx.salt}
                if ctx.iterations is not None:
                    params["time_cost"] = ctx.iterations
                args = (base_key, params)
            self._key_task = asyncio.ensure_future(asyncio.to_thread(derive_key, *args))
        return await asyncio.shield(self._key_task)

    @staticmethod
    def _addresses(key: StorageKey) -> Tuple[bytes, bytes]:
        _check_key(key)
        return generate_hash(key), generate_hash(nonce_key(key))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_bytes(self, key: StorageKey) -> Optional[bytes]:
        """
        Return the decrypted value stored under ``key`` as bytes, or None.

        Raises AuthenticityError when a value exists but cannot be decrypted
        with this instance's key material (wrong secret, salt or iterations,
        missing nonce or corrupted data).
        """
        ctx = await self.resolve()
        hash_key, hash_nonce = self._addresses(key)

        encrypted = await ctx.store.get(ctx.name, hash_key)
        if encrypted is None:
            return None

        crypto_key = await self._crypto_key(ctx)
        nonce = await ctx.store.get(ctx.name, hash_nonce)
        try:
            return decrypt(encrypted, crypto_key, nonce)
        except CryptoError as e:
            raise AuthenticityError(AUTHENTICITY_ERROR_MESSAGE) from e

    async def get(self, key: StorageKey) -> Optional[str]:
        """Return the decrypted value stored under ``key`` as text, or None."""
        value = await self.get_bytes(key)
        if value is None:
            return None
        return decode(value)

    async def set(self, key: StorageKey, value: StorageValue) -> None:
        """Encrypt ``value`` and store it, with its nonce, under the digest of ``key``."""
        if not (isinstance(value, str) or is_binary(value)):
            raise TypeError(f"Storage values must be str or bytes, not {type(value).__name__}")
        ctx = await self.resolve()
        hash_key, hash_nonce = self._addresses(key)

        crypto_key = await self._crypto_key(ctx)
        encrypted, nonce = encrypt(value, crypto_key)

        await ctx.store.put(ctx.name, hash_key, encrypted)
        await ctx.store.put(ctx.name, hash_nonce, nonce)

    async def delete(self, key: StorageKey) -> None:
        """Delete the value and nonce of ``key``; missing keys are ignored."""
        ctx = await self.resolve()
        hash_key, hash_nonce = self._addresses(key)

        await ctx.store.delete(ctx.name, hash_key)
        await ctx.store.delete(ctx.name, hash_nonce)

    async def clear(self) -> None:
        """Delete every value of the table, keeping its salt."""
        ctx = await self.resolve()
        await ctx.store.clear(ctx.name)
        await resolve_salt(ctx.store, ctx.name, ctx.salt)
        self._debug("storage cleared")

    async def close(self) -> None:
        """Close the database connection; stored data is kept."""
        if self._closed or self._destroyed:
            return
        task = self._context_task
        if task is not None:
            # a failed resolution opened nothing and is reported by the operation that awaited it
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is None:
                task.result().store.close()
        self._closed = True
        self._debug("storage closed")

    async def destroy(self) -> None:
        """Close the connection and delete the whole database, salt included."""
        if self._destroyed:
            return
        ctx = await self._context()
        ctx.store.close()
        await self._factory.delete(ctx.store.name)
        self._closed = True
        self._destroyed = True
        self._debug("storage destroyed")

    delete_db = destroy

    async def get_db(self) -> ObjectDatabase:
        ctx = await self.resolve()
        return ctx.store

    async def get_store_name(self) -> str:
        ctx = await self.resolve()
        return ctx.name

    async def __aenter__(self) -> "EncryptStorage":
        await self.resolve()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return f"EncryptStorage(db={self._config.db!r}, name={self._config.name!r}, state={self.state!r})"


def _consume_exception(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()
