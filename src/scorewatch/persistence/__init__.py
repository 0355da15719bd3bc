"""SQLite-backed persistence for snapshots, the notification ledger and subscribers.

All three stores may share one database file (``Settings.database_path``).

Public API:
- SnapshotStore: Last observed snapshot per event id
- NotificationLedger: recorded/notified state per detected event
- LedgerEntry: One ledger row
- SubscriberStore: Subscriber preferences with a sport index
"""

from .ledger import LedgerEntry, NotificationLedger
from .snapshot_store import SnapshotStore
from .subscriber_store import SubscriberStore

__all__ = [
    "LedgerEntry",
    "NotificationLedger",
    "SnapshotStore",
    "SubscriberStore",
]
