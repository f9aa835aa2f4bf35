"""SQLite schema definitions for the object store."""

# Layout version of the SQLite file itself, independent of the
# caller-controlled database version stored in ``metadata``.
SCHEMA_VERSION = 1

CREATE_TABLES = [
    # Database-level properties: logical name and caller version
    """
    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value TEXT
    )
    """,
    # Object stores (tables) created through upgrade hooks; names are opaque blobs
    """
    CREATE TABLE IF NOT EXISTS object_stores (
        name BLOB PRIMARY KEY,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # Records of every object store, keyed per store
    """
    CREATE TABLE IF NOT EXISTS records (
        store BLOB NOT NULL,
        key BLOB NOT NULL,
        value BLOB,
        PRIMARY KEY (store, key),
        FOREIGN KEY (store) REFERENCES object_stores(name) ON DELETE CASCADE
    )
    """,
    # File layout versions applied to this database
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def get_init_schema():
    """Return the statements that create the object-store tables and record the layout version."""
    return [
        *CREATE_TABLES,
        f"INSERT OR IGNORE INTO schema_version (version) VALUES ({SCHEMA_VERSION})",
    ]
