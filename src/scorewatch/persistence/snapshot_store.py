from __future__ import annotations

import json
import sqlite3
from typing import Optional

from ..models import Snapshot, snapshot_from_dict, snapshot_to_dict
from .base import SQLiteStore


class SnapshotStore(SQLiteStore):
    """Last observed snapshot per sporting event, the baseline for detection."""

    SCHEMA_NAME = "snapshots"
    SCHEMA_VERSION = 1

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        if from_version < 1:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    snapshot_id TEXT PRIMARY KEY,
                    sport TEXT NOT NULL,
                    status TEXT NOT NULL,
                    fetched_at TIMESTAMP NOT NULL,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_sport ON snapshots(sport)")

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        conn = self._get_connection()
        row = conn.execute("SELECT payload FROM snapshots WHERE snapshot_id = ?", (snapshot_id,)).fetchone()
        if row is None:
            return None
        return snapshot_from_dict(json.loads(row["payload"]))

    def put(self, snapshot: Snapshot) -> None:
        """Store ``snapshot`` as the new baseline, replacing any previous one."""
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO snapshots (snapshot_id, sport, status, fetched_at, payload)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(snapshot_id) DO UPDATE SET
                sport = excluded.sport,
                status = excluded.status,
                fetched_at = excluded.fetched_at,
                payload = excluded.payload
            """,
            (
                snapshot.id,
                snapshot.sport,
                snapshot.status.value,
                snapshot.fetched_at,
                json.dumps(snapshot_to_dict(snapshot), default=str),
            ),
        )
        conn.commit()

    def count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) AS count FROM snapshots").fetchone()["count"]
