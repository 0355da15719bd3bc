from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime, timezone
from typing import Optional

from ..audience import is_team_relevant
from ..preferences import SubscriberPreference, preference_from_dict, preference_to_dict
from .base import SQLiteStore

LOGGER = logging.getLogger(__name__)


def _may_follow(preference: SubscriberPreference, sport: str, codes: Sequence[str]) -> bool:
    sport_pref = preference.sport(sport)
    if sport_pref is None or not sport_pref.enabled:
        return False
    return is_team_relevant(sport_pref, codes)


class SubscriberStore(SQLiteStore):
    """Subscriber preference documents plus a sport index for candidate lookups.

    ``candidates`` is a coarse pre-filter. It may return subscribers that the
    audience resolver later rejects, but never drops one the resolver would
    accept.
    """

    SCHEMA_NAME = "subscribers"
    SCHEMA_VERSION = 1

    def _migrate_schema(self, conn: sqlite3.Connection, from_version: int) -> None:
        if from_version < 1:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscribers (
                    subscriber_id TEXT PRIMARY KEY,
                    address TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    updated_at TIMESTAMP NOT NULL,
                    document TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subscriber_sports (
                    subscriber_id TEXT NOT NULL,
                    sport TEXT NOT NULL,
                    PRIMARY KEY (subscriber_id, sport)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_subscribers_address ON subscribers(address)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_subscriber_sports_sport ON subscriber_sports(sport)")

    @staticmethod
    def _row_to_preference(row: sqlite3.Row) -> SubscriberPreference:
        return preference_from_dict(json.loads(row["document"]))

    def upsert(self, preference: SubscriberPreference) -> None:
        updated_at = preference.updated_at or datetime.now(timezone.utc)
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                INSERT INTO subscribers (subscriber_id, address, enabled, updated_at, document)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(subscriber_id) DO UPDATE SET
                    address = excluded.address,
                    enabled = excluded.enabled,
                    updated_at = excluded.updated_at,
                    document = excluded.document
                """,
                (
                    preference.subscriber_id,
                    preference.address,
                    int(preference.enabled),
                    updated_at,
                    json.dumps(preference_to_dict(preference)),
                ),
            )
            conn.execute("DELETE FROM subscriber_sports WHERE subscriber_id = ?", (preference.subscriber_id,))
            conn.executemany(
                "INSERT INTO subscriber_sports (subscriber_id, sport) VALUES (?, ?)",
                [(preference.subscriber_id, sport) for sport in preference.sports],
            )

    def get(self, subscriber_id: str) -> Optional[SubscriberPreference]:
        conn = self._get_connection()
        row = conn.execute("SELECT document FROM subscribers WHERE subscriber_id = ?", (subscriber_id,)).fetchone()
        return self._row_to_preference(row) if row else None

    def iter_all(self) -> Iterator[SubscriberPreference]:
        conn = self._get_connection()
        for row in conn.execute("SELECT document FROM subscribers ORDER BY subscriber_id"):
            yield self._row_to_preference(row)

    def candidates(self, sport: str, codes: Sequence[str]) -> list[SubscriberPreference]:
        """Enabled subscribers of ``sport`` for whom a matchup between ``codes`` is relevant."""
        conn = self._get_connection()
        cursor = conn.execute(
            """
            SELECT s.document FROM subscribers s
            JOIN subscriber_sports ss ON ss.subscriber_id = s.subscriber_id
            WHERE ss.sport = ? AND s.enabled = 1
            ORDER BY s.subscriber_id
            """,
            (sport.upper(),),
        )
        preferences = [self._row_to_preference(row) for row in cursor]
        return [pref for pref in preferences if _may_follow(pref, sport, codes)]

    def remove_addresses(self, addresses: Iterable[str]) -> int:
        """Delete subscribers registered with any of ``addresses``; returns the number removed."""
        targets = list(dict.fromkeys(addresses))
        if not targets:
            return 0
        conn = self._get_connection()
        removed = 0
        with conn:
            for address in targets:
                ids = [
                    row["subscriber_id"]
                    for row in conn.execute("SELECT subscriber_id FROM subscribers WHERE address = ?", (address,))
                ]
                for subscriber_id in ids:
                    conn.execute("DELETE FROM subscriber_sports WHERE subscriber_id = ?", (subscriber_id,))
                    conn.execute("DELETE FROM subscribers WHERE subscriber_id = ?", (subscriber_id,))
                removed += len(ids)
        if removed:
            LOGGER.info("Removed %d subscriber(s) with invalid push addresses", removed)
        return removed

    def count(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) AS count FROM subscribers").fetchone()["count"]
