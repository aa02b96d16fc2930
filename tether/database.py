"""
SQLite connection, schema and transaction scope.

A single Database object owns the one connection every store writes
through. Stores receive it by constructor injection; nothing holds a
module-level connection.

Write serialization:
- All statements go through one connection guarded by a reentrant lock.
- transaction() opens BEGIN IMMEDIATE, so a second process blocks on the
  SQLite write lock rather than interleaving between a read and a write.
- Nested transaction() calls join the outermost one.

Schema is versioned with PRAGMA user_version. MIGRATIONS maps each target
version to the statements that bring the previous version up to it.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS places (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            lat REAL NOT NULL,
            lng REAL NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS people (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            content TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS images (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            storage_path TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS files (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            storage_path TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS todos (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            status INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS custom_objects (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            object_type TEXT NOT NULL,
            mood INTEGER NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS key_values (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            object_kind TEXT NOT NULL,
            object_id TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_key_values_object
        ON key_values(object_kind, object_id)
        """,
        # Endpoints are stored canonically ordered (source < target),
        # so one UNIQUE constraint covers both directions.
        """
        CREATE TABLE IF NOT EXISTS links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_kind TEXT NOT NULL,
            source_id TEXT NOT NULL,
            target_kind TEXT NOT NULL,
            target_id TEXT NOT NULL,
            UNIQUE(source_kind, source_id, target_kind, target_id)
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_links_target
        ON links(target_kind, target_id)
        """,
    ],
}


class Database:
    """
    SQLite-backed persistence handle shared by all stores.

    Usable as a context manager; close() releases the connection.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    def _init_db(self) -> None:
        """Open the connection and bring the schema up to date."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so we can use BEGIN IMMEDIATE for atomic read-then-write
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._migrate()

    def _migrate(self) -> None:
        """Apply pending migrations in one transaction; roll back on failure."""
        current = self.schema_version
        if current >= SCHEMA_VERSION:
            logger.debug("Database schema up to date (v%d)", current)
            return

        logger.info("Migrating database from v%d to v%d", current, SCHEMA_VERSION)
        with self.transaction():
            while current < SCHEMA_VERSION:
                target = current + 1
                statements = MIGRATIONS.get(target)
                if statements is None:
                    raise RuntimeError(f"No migration found for schema version {target}")
                for statement in statements:
                    self._conn.execute(statement)
                # PRAGMA does not accept bound parameters
                self._conn.execute(f"PRAGMA user_version = {int(target)}")
                current = target

    @property
    def path(self) -> Path:
        return self._db_path

    @property
    def schema_version(self) -> int:
        return self._conn.execute("PRAGMA user_version").fetchone()[0]

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    # -------------------------------------------------------------------------
    # Statement execution
    # -------------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement. Outside a transaction it autocommits."""
        with self._lock:
            return self._conn.execute(sql, params)

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """
        Run a block of statements atomically.

        The outermost call issues BEGIN IMMEDIATE and commits on success or
        rolls back on any exception. Inner calls join the outer transaction.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self
                finally:
                    self._depth -= 1
                return

            # BEGIN IMMEDIATE acquires a write lock immediately,
            # preventing any other writer from interleaving
            self._conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self
                self._conn.execute("COMMIT")
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            finally:
                self._depth = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
