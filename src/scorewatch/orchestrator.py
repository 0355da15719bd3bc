"""Polling cycle: detect, resolve, dispatch, record.

For each fetched snapshot the orchestrator compares it with the stored
baseline, walks every detected event through the ledger, and stores the new
baseline even when nothing was detected.

Events that were recorded but never marked notified (a dispatch that timed out
or a process that stopped mid-cycle) are picked up again on the next cycle for
the same snapshot, so delivery is retried rather than lost.
"""

from __future__ import annotations

import datetime as dt
import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from .audience import resolve
from .config import DetectionThresholds
from .detector import detect
from .dispatcher import DeliveryDispatcher
from .errors import ScorewatchError, SourceUnavailable
from .logging_utils import render_fields_block
from .models import DetectedEvent, Snapshot
from .persistence import NotificationLedger, SnapshotStore, SubscriberStore
from .sources import SnapshotSource
from .utils import unique_ordered

LOGGER = logging.getLogger(__name__)


class KeyedLock:
    """One mutex per key, created on demand and dropped when nobody holds it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, waiters = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, waiters + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, waiters = self._locks[key]
                if waiters <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, waiters - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


@dataclass
class CycleSummary:
    snapshot_id: str
    detected: int = 0
    retried: int = 0
    skipped: int = 0
    notified: int = 0
    failed: int = 0
    recipients: int = 0
    undelivered: int = 0
    invalid_addresses: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    source_unavailable: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.source_unavailable

    def as_fields(self) -> dict[str, object]:
        return {
            "Snapshot": self.snapshot_id,
            "Detected": self.detected,
            "Retried": self.retried,
            "Skipped": self.skipped,
            "Notified": self.notified,
            "Failed": self.failed,
            "Recipients": self.recipients,
            "Undelivered": self.undelivered,
            "Invalid Addresses": len(self.invalid_addresses),
        }


class Orchestrator:
    def __init__(
        self,
        ledger: NotificationLedger,
        snapshots: SnapshotStore,
        subscribers: SubscriberStore,
        dispatcher: DeliveryDispatcher,
        *,
        thresholds: Optional[DetectionThresholds] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> None:
        self.ledger = ledger
        self.snapshots = snapshots
        self.subscribers = subscribers
        self.dispatcher = dispatcher
        self.thresholds = thresholds or DetectionThresholds()
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self._snapshot_locks = KeyedLock()
        self._event_locks = KeyedLock()

    def process_update(self, current: Snapshot) -> CycleSummary:
        """Run one cycle for ``current`` against the stored baseline."""
        summary = CycleSummary(snapshot_id=current.id)
        with self._snapshot_locks.hold(current.id):
            previous = self.snapshots.get(current.id)
            now = self._clock()
            events = list(detect(previous, current, thresholds=self.thresholds, detected_at=now))
            summary.detected = len(events)

            detected_ids = {event.id for event in events}
            for entry in self.ledger.pending(current.id):
                if entry.event is not None and entry.event_id not in detected_ids:
                    events.append(entry.event)
                    summary.retried += 1

            for event in events:
                self._process_event(event, current, now, summary)

            self.snapshots.put(current)

        summary.invalid_addresses = unique_ordered(summary.invalid_addresses)
        log = LOGGER.info if summary.ok else LOGGER.warning
        log(render_fields_block("Cycle Complete", summary.as_fields()))
        return summary

    def _process_event(self, event: DetectedEvent, snapshot: Snapshot, now: dt.datetime, summary: CycleSummary) -> None:
        try:
            with self._event_locks.hold(event.id):
                if self.ledger.is_notified(event.id):
                    LOGGER.debug("Skipping %s; already notified", event.id)
                    summary.skipped += 1
                    return

                self.ledger.record(event, now=now)
                candidates = self.subscribers.candidates(event.sport, event.audience.participant_codes)
                audience = resolve(event, candidates, now=now)
                outcome = self.dispatcher.dispatch(event, audience, snapshot)
                self.ledger.mark_notified(event.id, now=self._clock())
        except ScorewatchError as exc:
            summary.failed += 1
            summary.failures[event.id] = str(exc)
            LOGGER.error("Failed to process %s: %s", event.id, exc)
            return
        except Exception as exc:  # noqa: BLE001
            summary.failed += 1
            summary.failures[event.id] = str(exc)
            LOGGER.exception("Unexpected error while processing %s", event.id)
            return

        summary.notified += 1
        summary.recipients += outcome.succeeded
        summary.undelivered += outcome.failed
        summary.invalid_addresses.extend(outcome.invalid_addresses)
        LOGGER.info("Notified %s to %d recipient(s)", event.id, outcome.succeeded)

    def poll(self, snapshot_id: str, source: SnapshotSource) -> CycleSummary:
        """Fetch ``snapshot_id`` from ``source`` and run a cycle.

        When the source is unavailable nothing is detected and the stored
        baseline is left as it was.
        """
        try:
            current = source.fetch(snapshot_id)
        except SourceUnavailable as exc:
            LOGGER.warning("Source unavailable for %s: %s", snapshot_id, exc)
            return CycleSummary(snapshot_id=snapshot_id, source_unavailable=True)
        return self.process_update(current)

    def poll_many(
        self,
        requests: Sequence[tuple[str, SnapshotSource]],
        *,
        max_workers: int = 4,
    ) -> list[CycleSummary]:
        """Poll several snapshots concurrently; results keep the input order."""
        if not requests:
            return []
        workers = max(1, min(max_workers, len(requests)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scorewatch-poll") as executor:
            futures = [executor.submit(self.poll, snapshot_id, source) for snapshot_id, source in requests]
            return [future.result() for future in futures]
