"""Notification ledger: the at-most-once guard for detected events.

An event id moves ``unknown -> recorded -> notified`` and never back. Entries
are never deleted, so an event that was notified once can never be sent again
no matter how many times it is re-detected.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional

from ..errors import LedgerWriteFailure
from ..models import DetectedEvent
from .base import SQLiteStore

LedgerState = Literal["recorded", "notified"]


@dataclass(slots=True)
class LedgerEntry:
    """State of one event id in the ledger.

    Attributes:
        event_id: Deterministic event identifier
        state: "recorded" until dispatch returns, then "notified"
        recorded_at: When the event was first recorded
        notified_at: When dispatch completed, None while recorded
        event: The stored event payload
    """

    event_id: str
    state: LedgerState
    recorded_at: datetime
    notified_at: Optional[datetime] = None
    event: Optional[DetectedEvent] = None

    @property
    def is_notified(self) -> bool:
        return self.state == "notified"


class NotificationLedger(SQLiteStore):
    SCHEMA_NAME = "ledger"
    SCHEMA_VERSION = 1

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        if from_version < 1:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger (
                    event_id TEXT PRIMARY KEY,
                    snapshot_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'recorded',
                    recorded_at TIMESTAMP NOT NULL,
                    notified_at TIMESTAMP,
                    payload TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_state ON ledger(state)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_ledger_snapshot ON ledger(snapshot_id)")

    def _row_to_entry(self, row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            event_id=row["event_id"],
            state=row["state"],
            recorded_at=row["recorded_at"],
            notified_at=row["notified_at"],
            event=DetectedEvent.from_dict(json.loads(row["payload"])),
        )

    def get(self, event_id: str) -> Optional[LedgerEntry]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM ledger WHERE event_id = ?", (event_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def is_notified(self, event_id: str) -> bool:
        conn = self._get_connection()
        row = conn.execute("SELECT state FROM ledger WHERE event_id = ?", (event_id,)).fetchone()
        return row is not None and row["state"] == "notified"

    def record(self, event: DetectedEvent, *, now: Optional[datetime] = None) -> LedgerEntry:
        """Record ``event`` unless it is already known; never downgrades a notified entry.

        Raises:
            LedgerWriteFailure: The write could not be committed.
        """
        recorded_at = now or datetime.now(timezone.utc)
        try:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO ledger (event_id, snapshot_id, kind, state, recorded_at, payload)
                VALUES (?, ?, ?, 'recorded', ?, ?)
                ON CONFLICT(event_id) DO NOTHING
                """,
                (event.id, event.snapshot_id, event.kind.value, recorded_at, json.dumps(event.as_dict())),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise LedgerWriteFailure(f"Failed to record {event.id}: {exc}", event_id=event.id) from exc

        entry = self.get(event.id)
        if entry is None:
            raise LedgerWriteFailure(f"Ledger entry for {event.id} missing after write", event_id=event.id)
        return entry

    def mark_notified(self, event_id: str, *, now: Optional[datetime] = None) -> None:
        """Move a recorded entry to notified.

        Raises:
            LedgerWriteFailure: The entry is missing or the write failed.
        """
        notified_at = now or datetime.now(timezone.utc)
        try:
            conn = self._get_connection()
            cursor = conn.execute(
                """
                UPDATE ledger SET state = 'notified', notified_at = ?
                WHERE event_id = ? AND state = 'recorded'
                """,
                (notified_at, event_id),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise LedgerWriteFailure(f"Failed to mark {event_id} notified: {exc}", event_id=event_id) from exc

        if cursor.rowcount == 0 and not self.is_notified(event_id):
            raise LedgerWriteFailure(f"Cannot mark unknown event {event_id} notified", event_id=event_id)

    def pending(self, snapshot_id: Optional[str] = None) -> list[LedgerEntry]:
        """Entries recorded but never marked notified, oldest first."""
        conn = self._get_connection()
        if snapshot_id is None:
            cursor = conn.execute("SELECT * FROM ledger WHERE state = 'recorded' ORDER BY recorded_at")
        else:
            cursor = conn.execute(
                "SELECT * FROM ledger WHERE state = 'recorded' AND snapshot_id = ? ORDER BY recorded_at",
                (snapshot_id,),
            )
        return [self._row_to_entry(row) for row in cursor]

    def get_stats(self) -> dict[str, object]:
        """Counts of ledger entries.

        Returns:
            Dictionary with:
            - total: Total number of entries
            - by_state: Dict of state -> count
            - by_kind: Dict of event kind -> count
        """
        conn = self._get_connection()
        total = conn.execute("SELECT COUNT(*) AS count FROM ledger").fetchone()["count"]
        by_state = {
            row["state"]: row["count"]
            for row in conn.execute("SELECT state, COUNT(*) AS count FROM ledger GROUP BY state")
        }
        by_kind = {
            row["kind"]: row["count"] for row in conn.execute("SELECT kind, COUNT(*) AS count FROM ledger GROUP BY kind")
        }
        return {"total": total, "by_state": by_state, "by_kind": by_kind}
