from __future__ import annotations

import datetime as dt
import threading
from pathlib import Path
from typing import List, Sequence

import pytest

from scorewatch.config import DeliverySettings
from scorewatch.dispatcher import DeliveryDispatcher
from scorewatch.errors import LedgerWriteFailure, SourceUnavailable, TransientDeliveryFailure
from scorewatch.gateway import PushGateway, PushMessage, RecipientResult, RecordingGateway
from scorewatch.models import EventKind, Snapshot, SnapshotStatus
from scorewatch.orchestrator import CycleSummary, KeyedLock, Orchestrator
from scorewatch.persistence import NotificationLedger, SnapshotStore, SubscriberStore
from scorewatch.preferences import SportPreference, SubscriberPreference

NOW = dt.datetime(2024, 3, 10, 20, 0, tzinfo=dt.timezone.utc)


class OutageGateway(PushGateway):
    """Fails every batch while ``down`` is set."""

    def __init__(self) -> None:
        self.down = True
        self.inner = RecordingGateway()

    def send_batch(self, messages: Sequence[PushMessage]) -> List[RecipientResult]:
        if self.down:
            raise TransientDeliveryFailure("gateway offline", status_code=503)
        return self.inner.send_batch(messages)


class StubSource:
    sport = "NBA"

    def __init__(self, *snapshots: Snapshot, unavailable: Sequence[str] = ()) -> None:
        self.snapshots = {snapshot.id: snapshot for snapshot in snapshots}
        self.unavailable = set(unavailable)

    def fetch(self, snapshot_id: str) -> Snapshot:
        if snapshot_id in self.unavailable:
            raise SourceUnavailable("upstream 502", snapshot_id=snapshot_id)
        return self.snapshots[snapshot_id]


def _build(db_path: Path, gateway: PushGateway, subscribers: int = 2) -> Orchestrator:
    store = SubscriberStore(db_path)
    for index in range(subscribers):
        store.upsert(SubscriberPreference(f"u{index}", f"tok-{index}", sports={"NBA": SportPreference()}))
    dispatcher = DeliveryDispatcher(gateway, DeliverySettings(max_retries=0), sleep=lambda _: None)
    return Orchestrator(
        NotificationLedger(db_path),
        SnapshotStore(db_path),
        store,
        dispatcher,
        clock=lambda: NOW,
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "scorewatch.db"


class TestProcessUpdate:
    def test_game_start_is_notified_once(self, db_path, make_snapshot) -> None:
        gateway = RecordingGateway()
        orchestrator = _build(db_path, gateway)
        orchestrator.snapshots.put(make_snapshot(SnapshotStatus.SCHEDULED, 0, 0, period=0))

        live = make_snapshot(SnapshotStatus.LIVE, 2, 0)
        first = orchestrator.process_update(live)
        second = orchestrator.process_update(live)

        assert first.detected == 1
        assert first.notified == 1
        assert first.recipients == 2
        assert second.detected == 0
        assert len(gateway.batches) == 1
        assert orchestrator.ledger.is_notified("nba_1001_GAME_START")

    def test_redetected_event_is_skipped(self, db_path, make_snapshot) -> None:
        gateway = RecordingGateway()
        orchestrator = _build(db_path, gateway)
        scheduled = make_snapshot(SnapshotStatus.SCHEDULED, period=0)
        live = make_snapshot(SnapshotStatus.LIVE, 2, 0)

        orchestrator.snapshots.put(scheduled)
        orchestrator.process_update(live)
        orchestrator.snapshots.put(scheduled)
        summary = orchestrator.process_update(live)

        assert summary.detected == 1
        assert summary.skipped == 1
        assert summary.notified == 0
        assert len(gateway.batches) == 1

    def test_baseline_is_saved_without_events(self, db_path, make_snapshot) -> None:
        orchestrator = _build(db_path, RecordingGateway())
        orchestrator.snapshots.put(make_snapshot(SnapshotStatus.LIVE, 10, 10))
        current = make_snapshot(SnapshotStatus.LIVE, 12, 10)

        summary = orchestrator.process_update(current)

        assert summary.detected == 0
        assert summary.ok
        assert orchestrator.snapshots.get(current.id) == current

    def test_no_subscribers_still_marks_notified(self, db_path, make_snapshot) -> None:
        gateway = RecordingGateway()
        orchestrator = _build(db_path, gateway, subscribers=0)

        summary = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 0, 0))

        assert summary.notified == 1
        assert summary.recipients == 0
        assert gateway.batches == []
        assert orchestrator.ledger.is_notified("nba_1001_GAME_START")

    def test_ledger_failure_blocks_dispatch(self, db_path, make_snapshot, monkeypatch) -> None:
        gateway = RecordingGateway()
        orchestrator = _build(db_path, gateway)

        def broken_record(event, *, now=None):
            raise LedgerWriteFailure("disk full", event_id=event.id)

        monkeypatch.setattr(orchestrator.ledger, "record", broken_record)

        summary = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 0, 0))

        assert summary.failed == 1
        assert "disk full" in summary.failures["nba_1001_GAME_START"]
        assert gateway.batches == []
        assert not summary.ok

    def test_unexpected_error_is_isolated_per_event(self, db_path, make_snapshot, monkeypatch) -> None:
        gateway = RecordingGateway()
        orchestrator = _build(db_path, gateway)
        orchestrator.snapshots.put(make_snapshot(SnapshotStatus.LIVE, 100, 99, period=4))
        original = orchestrator.dispatcher.dispatch

        def flaky_dispatch(event, audience, snapshot=None):
            if event.kind is EventKind.GAME_END:
                raise RuntimeError("template exploded")
            return original(event, audience, snapshot)

        monkeypatch.setattr(orchestrator.dispatcher, "dispatch", flaky_dispatch)

        summary = orchestrator.process_update(make_snapshot(SnapshotStatus.FINAL, 110, 90, period=4))

        assert summary.detected == 1
        assert summary.failed == 1
        assert orchestrator.ledger.get("nba_1001_GAME_END").state == "recorded"
        assert orchestrator.snapshots.get("nba_1001").status is SnapshotStatus.FINAL

    def test_gateway_outage_leaves_event_for_next_cycle(self, db_path, make_snapshot) -> None:
        gateway = OutageGateway()
        orchestrator = _build(db_path, gateway)
        orchestrator.snapshots.put(make_snapshot(SnapshotStatus.SCHEDULED, period=0))

        first = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 2, 0))

        assert first.failed == 1
        assert first.notified == 0
        assert orchestrator.ledger.get("nba_1001_GAME_START").state == "recorded"
        assert orchestrator.snapshots.get("nba_1001").home.score == 2

        gateway.down = False
        second = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 4, 0))
        third = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 6, 0))

        assert second.detected == 0
        assert second.retried == 1
        assert second.notified == 1
        assert third.retried == 0
        assert len(gateway.inner.batches) == 1
        assert orchestrator.ledger.is_notified("nba_1001_GAME_START")

    def test_recipient_failures_still_mark_notified(self, db_path, make_snapshot) -> None:
        gateway = RecordingGateway(transient=["tok-0"])
        orchestrator = _build(db_path, gateway)

        summary = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 0, 0))

        assert summary.notified == 1
        assert summary.undelivered == 1
        assert summary.recipients == 1
        assert orchestrator.ledger.is_notified("nba_1001_GAME_START")

    def test_invalid_addresses_are_reported(self, db_path, make_snapshot) -> None:
        orchestrator = _build(db_path, RecordingGateway(invalid=["tok-1"]))

        summary = orchestrator.process_update(make_snapshot(SnapshotStatus.LIVE, 0, 0))

        assert summary.invalid_addresses == ["tok-1"]
        assert summary.recipients == 1


class TestPoll:
    def test_source_unavailable_keeps_baseline(self, db_path, make_snapshot) -> None:
        orchestrator = _build(db_path, RecordingGateway())
        baseline = make_snapshot(SnapshotStatus.LIVE, 50, 48)
        orchestrator.snapshots.put(baseline)

        summary = orchestrator.poll("nba_1001", StubSource(unavailable=["nba_1001"]))

        assert summary.source_unavailable
        assert not summary.ok
        assert orchestrator.snapshots.get("nba_1001") == baseline

    def test_poll_many_keeps_input_order(self, db_path, make_snapshot) -> None:
        orchestrator = _build(db_path, RecordingGateway())
        snapshots = [make_snapshot(SnapshotStatus.LIVE, 0, 0, snapshot_id=f"nba_{n}") for n in range(5)]
        source = StubSource(*snapshots, unavailable=["nba_3"])
        requests = [(snapshot.id, source) for snapshot in snapshots]

        summaries = orchestrator.poll_many(requests, max_workers=3)

        assert [summary.snapshot_id for summary in summaries] == [f"nba_{n}" for n in range(5)]
        assert [summary.source_unavailable for summary in summaries] == [False, False, False, True, False]
        assert orchestrator.poll_many([]) == []


class TestKeyedLock:
    def test_locks_are_released_after_use(self) -> None:
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock()
        active = []
        overlaps = []
        guard = threading.Lock()

        def worker() -> None:
            with locks.hold("game"):
                with guard:
                    active.append(1)
                    overlaps.append(len(active))
                threading.Event().wait(0.01)
                with guard:
                    active.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert max(overlaps) == 1
        assert len(locks) == 0


def test_cycle_summary_fields() -> None:
    summary = CycleSummary("nba_1", detected=2, notified=1, failed=1, invalid_addresses=["a", "b"])
    fields = summary.as_fields()
    assert fields["Invalid Addresses"] == 2
    assert fields["Failed"] == 1
    assert summary.ok is False
