"""SQLite-backed object store: named, versioned databases holding key-value tables.

Each logical database is one SQLite file under a root directory. Tables
("object stores") are created only from an upgrade hook while a database is
opened with a higher version, and every read or write is a single autocommit
statement. Blocking SQLite calls run in worker threads so the public methods
can be awaited from asyncio code.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .schema import get_init_schema
from ..core.exceptions import (
    ObjectStoreExistsError,
    ObjectStoreNotFoundError,
    StorageClosedError,
    StorageError,
    VersionError,
)

logger = logging.getLogger(__name__)

StoreName = Union[str, bytes]
RecordKey = Union[str, bytes]
UpgradeHook = Callable[["ObjectDatabase", int, int], None]

BUSY_TIMEOUT = 30.0
DB_SUFFIX = ".sqlite"


def _store_id(name: StoreName) -> bytes:
    # store names may hold any code point, so they are persisted as UTF-8 blobs
    return name.encode("utf-8") if isinstance(name, str) else bytes(name)


def _param(key: RecordKey):
    return bytes(key) if isinstance(key, (bytearray, memoryview)) else key


class ObjectDatabase:
    """An open connection to one logical database."""

    __slots__ = ("name", "path", "version", "_conn", "_lock", "_closed", "_upgrading", "_stores")

    def __init__(self, name: str, path: Path, connection: sqlite3.Connection):
        """Initialize connection state."""
        self.name = name
        self.path = path
        self.version = 0
        self._conn = connection
        self._lock = threading.Lock()
        self._closed = False
        self._upgrading = False
        self._stores: List[str] = []

    # ------------------------------------------------------------------
    # Schema / object stores
    # ------------------------------------------------------------------

    @property
    def object_store_names(self) -> tuple:
        return tuple(self._stores)

    @property
    def closed(self) -> bool:
        return self._closed

    def _load_store_names(self) -> None:
        rows = self._conn.execute("SELECT name FROM object_stores").fetchall()
        self._stores = sorted(bytes(row["name"]).decode("utf-8") for row in rows)

    def create_object_store(self, name: str) -> None:
        """Create a table; only valid inside an upgrade hook."""
        if not self._upgrading:
            raise StorageError("Object stores can only be created during a version upgrade")
        if name in self._stores:
            raise ObjectStoreExistsError(f"Object store already exists: {name!r}")
        try:
            self._conn.execute("INSERT INTO object_stores (name) VALUES (?)", (_store_id(name),))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to create object store: {e}")
        self._stores.append(name)

    def delete_object_store(self, name: str) -> None:
        """Drop a table and its records; only valid inside an upgrade hook."""
        if not self._upgrading:
            raise StorageError("Object stores can only be deleted during a version upgrade")
        self._require_store(name)
        try:
            self._conn.execute("DELETE FROM records WHERE store = ?", (_store_id(name),))
            self._conn.execute("DELETE FROM object_stores WHERE name = ?", (_store_id(name),))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete object store: {e}")
        self._stores.remove(name)

    def _require_store(self, name: str) -> None:
        if name not in self._stores:
            raise ObjectStoreNotFoundError(f"No object store named {name!r} in database {self.name!r}")

    # ------------------------------------------------------------------
    # Blocking primitives (run in worker threads)
    # ------------------------------------------------------------------

    def _run(self, store: str, query: str, params=(), fetch: Optional[str] = None):
        with self._lock:
            if self._closed:
                raise StorageClosedError(f"Database {self.name!r} connection is closed")
            self._require_store(store)
            cursor = self._conn.cursor()
            try:
                cursor.execute(query, params)
                if fetch == "one":
                    return cursor.fetchone()
                if fetch == "all":
                    return cursor.fetchall()
                return cursor.rowcount
            except sqlite3.Error as e:
                raise StorageError(f"Object store operation failed: {e}")
            finally:
                cursor.close()

    def _get(self, store, key):
        row = self._run(
            store,
            "SELECT value FROM records WHERE store = ? AND key = ?",
            (_store_id(store), _param(key)),
            fetch="one",
        )
        return row["value"] if row else None

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def get(self, store: str, key: RecordKey) -> Optional[Any]:
        """Return the value stored under ``key`` or None."""
        return await asyncio.to_thread(self._get, store, key)

    async def put(self, store: str, key: RecordKey, value: Any) -> RecordKey:
        """Insert or replace the record under ``key``."""
        await asyncio.to_thread(
            self._run,
            store,
            "INSERT OR REPLACE INTO records (store, key, value) VALUES (?, ?, ?)",
            (_store_id(store), _param(key), _param(value)),
        )
        return key

    async def add(self, store: str, key: RecordKey, value: Any) -> bool:
        """Insert the record only if ``key`` is absent; return whether it was written."""
        written = await asyncio.to_thread(
            self._run,
            store,
            "INSERT OR IGNORE INTO records (store, key, value) VALUES (?, ?, ?)",
            (_store_id(store), _param(key), _param(value)),
        )
        return written == 1

    async def delete(self, store: str, key: RecordKey) -> None:
        """Delete the record under ``key``; missing keys are ignored."""
        await asyncio.to_thread(
            self._run,
            store,
            "DELETE FROM records WHERE store = ? AND key = ?",
            (_store_id(store), _param(key)),
        )

    async def clear(self, store: str) -> None:
        """Delete every record of ``store`` but keep the store itself."""
        await asyncio.to_thread(
            self._run, store, "DELETE FROM records WHERE store = ?", (_store_id(store),)
        )

    async def get_all_keys(self, store: str) -> List[RecordKey]:
        rows = await asyncio.to_thread(
            self._run,
            store,
            "SELECT key FROM records WHERE store = ? ORDER BY key",
            (_store_id(store),),
            "all",
        )
        return [row["key"] for row in rows]

    async def get_all(self, store: str) -> List[Any]:
        rows = await asyncio.to_thread(
            self._run,
            store,
            "SELECT value FROM records WHERE store = ? ORDER BY key",
            (_store_id(store),),
            "all",
        )
        return [row["value"] for row in rows]

    async def count(self, store: str) -> int:
        row = await asyncio.to_thread(
            self._run,
            store,
            "SELECT COUNT(*) AS n FROM records WHERE store = ?",
            (_store_id(store),),
            "one",
        )
        return row["n"]

    def close(self) -> None:
        """Close the connection; data stays on disk."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()
        logger.debug("closed database %r", self.name)


class DatabaseFactory:
    """Open, list and delete the databases kept under ``root``."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def database_path(self, name: str) -> Path:
        # hex keeps arbitrary names (including decoded digests) filesystem-safe
        return self.root / (name.encode("utf-8").hex() + DB_SUFFIX)

    def _connect(self, path: Path) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(path), check_same_thread=False, isolation_level=None, timeout=BUSY_TIMEOUT
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _open(
        self,
        name: str,
        version: Optional[int],
        upgrade: Optional[UpgradeHook],
        required: Iterable[str] = (),
    ) -> ObjectDatabase:
        if version is not None and int(version) < 1:
            raise StorageError("Database version must be a positive integer")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path = self.database_path(name)
            conn = self._connect(path)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to open database {name!r}: {e}")

        db = ObjectDatabase(name, path, conn)
        try:
            conn.execute("BEGIN IMMEDIATE")
            for statement in get_init_schema():
                conn.execute(statement)

            row = conn.execute("SELECT value FROM metadata WHERE key = 'version'").fetchone()
            current = int(row["value"]) if row else 0
            db._load_store_names()
            if version is not None:
                requested = int(version)
            elif any(store not in db.object_store_names for store in required):
                # bump one past the version seen under the write lock
                requested = current + 1
            else:
                requested = max(current, 1)
            if requested < current:
                raise VersionError(
                    f"Requested version {requested} is lower than the existing version {current}"
                )

            if requested > current:
                conn.execute(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES ('name', ?), ('version', ?)",
                    (name, str(requested)),
                )
                if upgrade is not None:
                    db._upgrading = True
                    try:
                        upgrade(db, current, requested)
                    finally:
                        db._upgrading = False
                logger.debug("upgraded database %r from version %d to %d", name, current, requested)
            conn.execute("COMMIT")
            db.version = requested
        except sqlite3.Error as e:
            self._abort(conn)
            raise StorageError(f"Failed to initialize database {name!r}: {e}")
        except BaseException:
            self._abort(conn)
            raise
        return db

    @staticmethod
    def _abort(conn: sqlite3.Connection) -> None:
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
        finally:
            conn.close()

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        upgrade: Optional[UpgradeHook] = None,
        required: Iterable[str] = (),
    ) -> ObjectDatabase:
        """
        Open (creating if needed) the database ``name``.

        ``version`` defaults to the current version (1 for a new database).
        When it is higher than the stored version, ``upgrade(db, old, new)`` runs
        inside the same transaction and may create or delete object stores.

        Without an explicit ``version``, any store named in ``required`` that
        does not exist yet makes the open request ``current + 1``, so the
        upgrade hook runs and can create it. The version is read after the
        write lock is taken, which keeps concurrent openers from racing.
        """
        return await asyncio.to_thread(self._open, name, version, upgrade, tuple(required))

    def _delete(self, name: str) -> None:
        path = self.database_path(name)
        try:
            for candidate in (path, Path(f"{path}-journal"), Path(f"{path}-wal"), Path(f"{path}-shm")):
                candidate.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete database {name!r}: {e}")
        logger.debug("deleted database %r", name)

    async def delete(self, name: str) -> None:
        """Irreversibly delete the database ``name``; missing databases are ignored."""
        await asyncio.to_thread(self._delete, name)

    def _list(self) -> List[Dict[str, Any]]:
        if not self.root.exists():
            return []
        databases = []
        for path in sorted(self.root.glob("*" + DB_SUFFIX)):
            try:
                name = bytes.fromhex(path.stem).decode("utf-8")
            except ValueError:
                continue
            version = 0
            try:
                conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
                try:
                    row = conn.execute("SELECT value FROM metadata WHERE key = 'version'").fetchone()
                    version = int(row[0]) if row else 0
                finally:
                    conn.close()
            except sqlite3.Error:
                # half-initialized file; report it without a version
                pass
            databases.append({"name": name, "version": version})
        return databases

    async def list(self) -> List[Dict[str, Any]]:
        """Return ``{"name", "version"}`` for every database under the root."""
        return await asyncio.to_thread(self._list)
