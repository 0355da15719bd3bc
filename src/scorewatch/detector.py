"""Event detection by comparing two snapshots of the same sporting event.

Every rule looks at the same ``(previous, current)`` pair and either returns a
single event or nothing. Results are concatenated in a fixed order so repeated
calls on the same pair produce the same tuple with the same identifiers.

Score rules are edge-triggered: a blowout or close game only fires on the poll
where the differential crosses the threshold, never on every poll that the
condition keeps holding.

Nothing here reads the clock. The caller supplies ``detected_at``; when it is
omitted the current snapshot's fetch time is used.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from typing import Optional

from .config import DetectionThresholds
from .models import (
    DetectedEvent,
    EventKind,
    EventMetadata,
    EventPriority,
    Snapshot,
    SnapshotStatus,
    TargetAudience,
    make_event_id,
)

Rule = Callable[[Optional[Snapshot], Snapshot, DetectionThresholds], Optional[tuple[EventKind, EventMetadata, Optional[str]]]]

_PRIORITIES: dict[EventKind, EventPriority] = {
    EventKind.GAME_START: EventPriority.HIGH,
    EventKind.GAME_END: EventPriority.HIGH,
    EventKind.BLOWOUT: EventPriority.MEDIUM,
    EventKind.CLOSE_GAME: EventPriority.HIGH,
    EventKind.FINAL_PERIOD: EventPriority.MEDIUM,
    EventKind.OVERTIME: EventPriority.HIGH,
    EventKind.GAME_POSTPONED: EventPriority.MEDIUM,
    EventKind.GAME_CANCELLED: EventPriority.MEDIUM,
}


def _base_metadata(snapshot: Snapshot, **extra: object) -> EventMetadata:
    return EventMetadata(
        home_score=snapshot.home.score,
        away_score=snapshot.away.score,
        period=snapshot.period,
        **extra,  # type: ignore[arg-type]
    )


def _game_start(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    was_live = previous is not None and previous.status is SnapshotStatus.LIVE
    if current.status is not SnapshotStatus.LIVE or was_live:
        return None
    return EventKind.GAME_START, _base_metadata(current), None


def _game_end(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    if previous is None or previous.status is not SnapshotStatus.LIVE:
        return None
    if current.status is not SnapshotStatus.FINAL:
        return None
    leader = current.leader
    metadata = _base_metadata(
        current,
        differential=current.differential,
        leading_participant=leader.code if leader else None,
        winner=leader.code if leader else None,
        is_tie=leader is None,
    )
    return EventKind.GAME_END, metadata, None


def _blowout(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    if not current.is_live:
        return None
    differential = current.differential
    if differential < thresholds.blowout:
        return None
    if previous is not None and previous.differential >= thresholds.blowout:
        return None
    leader = current.leader
    metadata = _base_metadata(
        current,
        differential=differential,
        leading_participant=leader.code if leader else None,
    )
    return EventKind.BLOWOUT, metadata, None


def _close_game(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    if not current.is_live or current.total_periods <= 0:
        return None
    differential = current.differential
    if differential > thresholds.close:
        return None
    if current.period < current.total_periods:
        return None
    if previous is not None and previous.differential <= thresholds.close:
        return None
    leader = current.leader
    metadata = _base_metadata(
        current,
        differential=differential,
        leading_participant=leader.code if leader else None,
    )
    return EventKind.CLOSE_GAME, metadata, None


def _final_period(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    # No baseline means we cannot tell whether the period was just entered.
    if previous is None or not current.is_live or current.total_periods <= 0:
        return None
    if current.period != current.total_periods or previous.period == current.total_periods:
        return None
    return EventKind.FINAL_PERIOD, _base_metadata(current, differential=current.differential), None


def _overtime(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    if previous is None or not current.is_live or current.total_periods <= 0:
        return None
    if current.period <= current.total_periods or previous.period > current.total_periods:
        return None
    overtime_number = current.period - current.total_periods
    metadata = _base_metadata(current, differential=current.differential, overtime_number=overtime_number)
    return EventKind.OVERTIME, metadata, str(overtime_number)


def _postponed_or_cancelled(previous: Optional[Snapshot], current: Snapshot, thresholds: DetectionThresholds):
    for status, kind in (
        (SnapshotStatus.POSTPONED, EventKind.GAME_POSTPONED),
        (SnapshotStatus.CANCELLED, EventKind.GAME_CANCELLED),
    ):
        if current.status is status and (previous is None or previous.status is not status):
            return kind, _base_metadata(current), None
    return None


RULES: tuple[Rule, ...] = (
    _game_start,
    _game_end,
    _blowout,
    _close_game,
    _final_period,
    _overtime,
    _postponed_or_cancelled,
)


def detect(
    previous: Optional[Snapshot],
    current: Snapshot,
    *,
    thresholds: DetectionThresholds | None = None,
    detected_at: dt.datetime | None = None,
) -> tuple[DetectedEvent, ...]:
    """Return the events produced by moving from ``previous`` to ``current``.

    Args:
        previous: Last stored snapshot, or None on first observation
        current: Freshly fetched snapshot
        thresholds: Blowout/close-game thresholds (defaults 20 and 5)
        detected_at: Detection timestamp stamped on every event

    Returns:
        Events in rule order, no duplicates by identifier
    """
    if previous is not None and previous.id != current.id:
        raise ValueError(f"Cannot compare snapshots of different events: {previous.id} vs {current.id}")

    thresholds = thresholds or DetectionThresholds()
    detected = detected_at or current.fetched_at
    audience = TargetAudience(current.participant_codes)

    events: list[DetectedEvent] = []
    seen: set[str] = set()
    for rule in RULES:
        result = rule(previous, current, thresholds)
        if result is None:
            continue
        kind, metadata, disambiguator = result
        event_id = make_event_id(current.id, kind, disambiguator)
        if event_id in seen:
            continue
        seen.add(event_id)
        events.append(
            DetectedEvent(
                id=event_id,
                kind=kind,
                priority=_PRIORITIES[kind],
                sport=current.sport,
                snapshot_id=current.id,
                detected_at=detected,
                occurred_at=current.fetched_at,
                metadata=metadata,
                audience=audience,
            )
        )
    return tuple(events)
