"""
Database connection management.

Provides SQLite connections and corruption detection for the usage store.
"""

import sqlite3
from pathlib import Path

from usage_ledger.core.billing import period_key

DEFAULT_DB_PATH = "usage_ledger.db"

# Fragments of sqlite error messages that indicate a damaged file
CORRUPTION_MARKERS = (
    "malformed",
    "not a database",
    "corrupt",
    "disk image",
)


class StorageUnavailableError(Exception):
    """Raised when no usable store can be opened, even after repair."""


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection tuned for append-heavy use.

    Enables WAL journaling, relaxed syncing, row access by column name and
    the `billing_period_key` SQL function.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.create_function("billing_period_key", 2, period_key, deterministic=True)
    return conn


def is_corruption_error(error: BaseException) -> bool:
    """Check whether a sqlite error means the database file is damaged."""
    if not isinstance(error, sqlite3.DatabaseError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in CORRUPTION_MARKERS)
