from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Tuple


class SnapshotStatus(str, Enum):
    SCHEDULED = "scheduled"
    LIVE = "live"
    FINAL = "final"
    POSTPONED = "postponed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    GAME_START = "GAME_START"
    GAME_END = "GAME_END"
    BLOWOUT = "BLOWOUT"
    CLOSE_GAME = "CLOSE_GAME"
    FINAL_PERIOD = "FINAL_PERIOD"
    OVERTIME = "OVERTIME"
    GAME_POSTPONED = "GAME_POSTPONED"
    GAME_CANCELLED = "GAME_CANCELLED"


class EventPriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


@dataclass(frozen=True, slots=True)
class Participant:
    name: str
    code: str
    score: int = 0
    record: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Normalized state of one sporting event at fetch time.

    ``extras`` is an opaque bag for sport-specific add-ons; nothing in the
    detection or delivery path reads it.
    """

    id: str
    sport: str
    status: SnapshotStatus
    home: Participant
    away: Participant
    period: int
    total_periods: int
    clock: Optional[str]
    fetched_at: dt.datetime
    status_detail: Optional[str] = None
    scheduled_at: Optional[dt.datetime] = None
    is_playoff: bool = False
    extras: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def differential(self) -> int:
        return abs(self.home.score - self.away.score)

    @property
    def is_live(self) -> bool:
        return self.status is SnapshotStatus.LIVE

    @property
    def leader(self) -> Optional[Participant]:
        if self.home.score > self.away.score:
            return self.home
        if self.away.score > self.home.score:
            return self.away
        return None

    @property
    def participant_codes(self) -> Tuple[str, str]:
        return (self.home.code, self.away.code)


@dataclass(frozen=True, slots=True)
class EventMetadata:
    """Typed detail carried by a detected event.

    Only the fields relevant to the event kind are populated.
    """

    home_score: int
    away_score: int
    period: int
    differential: Optional[int] = None
    leading_participant: Optional[str] = None
    winner: Optional[str] = None
    is_tie: bool = False
    overtime_number: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "home_score": self.home_score,
            "away_score": self.away_score,
            "period": self.period,
            "differential": self.differential,
            "leading_participant": self.leading_participant,
            "winner": self.winner,
            "is_tie": self.is_tie,
            "overtime_number": self.overtime_number,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventMetadata":
        return cls(
            home_score=int(data.get("home_score") or 0),
            away_score=int(data.get("away_score") or 0),
            period=int(data.get("period") or 0),
            differential=data.get("differential"),
            leading_participant=data.get("leading_participant"),
            winner=data.get("winner"),
            is_tie=bool(data.get("is_tie", False)),
            overtime_number=data.get("overtime_number"),
        )


@dataclass(frozen=True, slots=True)
class TargetAudience:
    """Participant codes whose fans may care about an event. Used for fan-out only."""

    participant_codes: Tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DetectedEvent:
    id: str
    kind: EventKind
    priority: EventPriority
    sport: str
    snapshot_id: str
    detected_at: dt.datetime
    occurred_at: dt.datetime
    metadata: EventMetadata
    audience: TargetAudience = field(default_factory=TargetAudience)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "priority": int(self.priority),
            "sport": self.sport,
            "snapshot_id": self.snapshot_id,
            "detected_at": self.detected_at.isoformat(),
            "occurred_at": self.occurred_at.isoformat(),
            "metadata": self.metadata.as_dict(),
            "participant_codes": list(self.audience.participant_codes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedEvent":
        return cls(
            id=str(data["id"]),
            kind=EventKind(data["kind"]),
            priority=EventPriority(int(data["priority"])),
            sport=str(data["sport"]),
            snapshot_id=str(data["snapshot_id"]),
            detected_at=dt.datetime.fromisoformat(data["detected_at"]),
            occurred_at=dt.datetime.fromisoformat(data["occurred_at"]),
            metadata=EventMetadata.from_dict(data.get("metadata") or {}),
            audience=TargetAudience(tuple(data.get("participant_codes") or ())),
        )


def make_event_id(snapshot_id: str, kind: EventKind, disambiguator: Optional[str] = None) -> str:
    """Return the deterministic identity of an event.

    The same snapshot id, kind and disambiguator always yield the same id, which
    is what the ledger keys on.
    """
    parts = [snapshot_id, kind.value]
    if disambiguator:
        parts.append(disambiguator)
    return "_".join(parts)


def snapshot_to_dict(snapshot: Snapshot) -> Dict[str, Any]:
    def _participant(participant: Participant) -> Dict[str, Any]:
        return {
            "name": participant.name,
            "code": participant.code,
            "score": participant.score,
            "record": participant.record,
        }

    return {
        "id": snapshot.id,
        "sport": snapshot.sport,
        "status": snapshot.status.value,
        "home": _participant(snapshot.home),
        "away": _participant(snapshot.away),
        "period": snapshot.period,
        "total_periods": snapshot.total_periods,
        "clock": snapshot.clock,
        "fetched_at": snapshot.fetched_at.isoformat(),
        "status_detail": snapshot.status_detail,
        "scheduled_at": snapshot.scheduled_at.isoformat() if snapshot.scheduled_at else None,
        "is_playoff": snapshot.is_playoff,
        "extras": dict(snapshot.extras),
    }


def snapshot_from_dict(data: Dict[str, Any]) -> Snapshot:
    def _participant(raw: Dict[str, Any]) -> Participant:
        return Participant(
            name=str(raw.get("name") or ""),
            code=str(raw.get("code") or ""),
            score=int(raw.get("score") or 0),
            record=raw.get("record"),
        )

    scheduled_raw = data.get("scheduled_at")
    return Snapshot(
        id=str(data["id"]),
        sport=str(data["sport"]),
        status=SnapshotStatus(data["status"]),
        home=_participant(data.get("home") or {}),
        away=_participant(data.get("away") or {}),
        period=int(data.get("period") or 0),
        total_periods=int(data.get("total_periods") or 0),
        clock=data.get("clock"),
        fetched_at=dt.datetime.fromisoformat(data["fetched_at"]),
        status_detail=data.get("status_detail"),
        scheduled_at=dt.datetime.fromisoformat(scheduled_raw) if scheduled_raw else None,
        is_playoff=bool(data.get("is_playoff", False)),
        extras=dict(data.get("extras") or {}),
    )
