"""Shared SQLite plumbing for the scorewatch stores.

Every store owns its tables inside one database file and tracks its own schema
version in ``schema_versions``, so stores can share a file without stepping on
each other's migrations.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path


def _adapt_datetime(value: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return value.isoformat()


def _convert_datetime(data: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(data.decode("utf-8"))


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("TIMESTAMP", _convert_datetime)


class SQLiteStore:
    """Base class holding a thread-local connection and a versioned schema.

    Subclasses set ``SCHEMA_NAME`` and ``SCHEMA_VERSION`` and implement
    ``_migrate_schema``.
    """

    SCHEMA_NAME = ""
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._local = threading.local()
        self._init_db()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection for the current thread.

        SQLite connections may not be shared across threads, so each thread
        gets its own.
        """
        if getattr(self._local, "connection", None) is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            connection = sqlite3.connect(
                self._db_path,
                detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
                timeout=30.0,
            )
            connection.execute("PRAGMA journal_mode=WAL")
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
        return self._local.connection

    def _init_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_versions (
                name TEXT PRIMARY KEY,
                version INTEGER NOT NULL
            )
        """)
        row = conn.execute("SELECT version FROM schema_versions WHERE name = ?", (self.SCHEMA_NAME,)).fetchone()
        current_version = row["version"] if row else 0
        if current_version < self.SCHEMA_VERSION:
            self._migrate_schema(conn, current_version)
            conn.execute(
                """
                INSERT INTO schema_versions (name, version) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET version = excluded.version
                """,
                (self.SCHEMA_NAME, self.SCHEMA_VERSION),
            )
        conn.commit()

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        """Close the database connection for the current thread."""
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            self._local.connection = None
