"""SQLite database holding the server-key and token-check tables."""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS webpush_token_check (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    token_digest TEXT NOT NULL,
    install_id TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS webpush_token_check_token
    ON webpush_token_check(token_digest);

CREATE TABLE IF NOT EXISTS webpush_server_key (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id TEXT NOT NULL,
    public_key BLOB NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS webpush_server_key_unique
    ON webpush_server_key(client_id);
"""


class StorageError(Exception):
    """Raised when the backing store fails."""


class RelayDatabase:
    """Lazily opened SQLite connection shared by the registries.

    Calls come from worker threads (asyncio.to_thread), so the
    connection is opened with check_same_thread=False and every
    transaction holds a lock. Uniqueness across processes is still
    left to the UNIQUE indexes.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is not None:
            return self._conn
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.executescript(_SCHEMA)
        self._conn = conn
        return conn

    def open(self) -> None:
        """Connect now and create the tables if they are missing."""
        with self._lock:
            try:
                self._connect()
            except sqlite3.Error as e:
                msg = f"cannot open database {self._db_path}: {e}"
                raise StorageError(msg) from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside a commit-or-rollback block.

        sqlite3.IntegrityError propagates unchanged so callers can
        react to unique-constraint conflicts; any other sqlite3.Error
        becomes StorageError.
        """
        with self._lock:
            try:
                conn = self._connect()
                with conn:
                    yield conn
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as e:
                msg = f"database error: {e}"
                raise StorageError(msg) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
