"""Notification message templates and rendering.

Templates use ``str.format`` placeholders. Unknown placeholders are left in
place rather than raising, so a template written for one sport never breaks
delivery for another.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import TemplateSettings
from .models import DetectedEvent, EventKind, Snapshot

ALL_SPORTS = "ALL"

EMOJI: Dict[EventKind, str] = {
    EventKind.GAME_START: "🏀",
    EventKind.GAME_END: "🎯",
    EventKind.CLOSE_GAME: "🔥",
    EventKind.BLOWOUT: "💥",
    EventKind.GAME_POSTPONED: "⏸️",
    EventKind.GAME_CANCELLED: "❌",
    EventKind.FINAL_PERIOD: "⏰",
    EventKind.OVERTIME: "⚡",
}


class TemplateDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(template: str, context: Dict[str, Any]) -> str:
    try:
        return template.format_map(TemplateDict(context))
    except (ValueError, IndexError, AttributeError):
        return template


@dataclass(frozen=True, slots=True)
class MessageTemplate:
    id: str
    kind: EventKind
    title: str
    body: str
    sport: str = ALL_SPORTS
    priority: int = 1


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


DEFAULT_TEMPLATES: tuple[MessageTemplate, ...] = (
    MessageTemplate("game_start_generic", EventKind.GAME_START, "Game On!", "{awayCode} @ {homeCode} is now live!"),
    MessageTemplate(
        "game_start_nba",
        EventKind.GAME_START,
        "Tip-off Time!",
        "{awayParticipant} takes on {homeParticipant}. Who holds the court?",
        sport="NBA",
        priority=2,
    ),
    MessageTemplate("game_end_generic", EventKind.GAME_END, "Final Score", "{result}"),
    MessageTemplate(
        "blowout_generic",
        EventKind.BLOWOUT,
        "Blowout Alert",
        "{leadingParticipant} is dominating {trailingParticipant} by {differential} points",
    ),
    MessageTemplate(
        "close_game_generic",
        EventKind.CLOSE_GAME,
        "Close Game!",
        "{awayCode} @ {homeCode} is a nail-biter! Score within {differential} points",
    ),
    MessageTemplate(
        "close_game_nba",
        EventKind.CLOSE_GAME,
        "Crunch Time!",
        "{periodLabel}, {clock} left! {awayCode} {awayScore} - {homeCode} {homeScore}",
        sport="NBA",
        priority=2,
    ),
    MessageTemplate(
        "final_period_generic",
        EventKind.FINAL_PERIOD,
        "Final Period",
        "{awayCode} {awayScore} @ {homeCode} {homeScore} - Final period underway!",
    ),
    MessageTemplate("overtime_generic", EventKind.OVERTIME, "Overtime!", "{awayCode} @ {homeCode} is going to OT!"),
    MessageTemplate(
        "overtime_nba",
        EventKind.OVERTIME,
        "Free Basketball!",
        "{awayCode} and {homeCode} are heading to OT tied at {homeScore}!",
        sport="NBA",
        priority=2,
    ),
    MessageTemplate(
        "postponed_generic",
        EventKind.GAME_POSTPONED,
        "Game Postponed",
        "{awayCode} @ {homeCode} has been postponed",
    ),
    MessageTemplate(
        "cancelled_generic",
        EventKind.GAME_CANCELLED,
        "Game Cancelled",
        "{awayCode} @ {homeCode} has been cancelled",
    ),
)


class TemplateRegistry:
    """Picks the template for an event kind and sport.

    Sport-specific templates beat ``ALL``; within a scope the highest priority
    wins and ties break on template id, so the choice is deterministic.
    """

    def __init__(self, templates: Iterable[MessageTemplate] = DEFAULT_TEMPLATES) -> None:
        self._templates: List[MessageTemplate] = list(templates)

    @classmethod
    def from_settings(cls, entries: Iterable[TemplateSettings]) -> "TemplateRegistry":
        templates = list(DEFAULT_TEMPLATES)
        for index, entry in enumerate(entries):
            try:
                kind = EventKind(entry.kind)
            except ValueError as exc:
                raise ValueError(f"'templates[{index}].kind' is not a known event kind: {entry.kind}") from exc
            template_id = entry.id or f"custom_{kind.value.lower()}_{entry.sport.lower()}_{index}"
            templates.append(
                MessageTemplate(
                    id=template_id,
                    kind=kind,
                    title=entry.title,
                    body=entry.body,
                    sport=entry.sport,
                    priority=entry.priority,
                )
            )
        return cls(templates)

    def select(self, kind: EventKind, sport: str) -> Optional[MessageTemplate]:
        sport_key = sport.upper()
        candidates = [t for t in self._templates if t.kind is kind and t.sport in (sport_key, ALL_SPORTS)]
        if not candidates:
            return None
        candidates.sort(key=lambda t: (t.sport != sport_key, -t.priority, t.id))
        return candidates[0]


def period_label(period: int, total_periods: int = 0) -> str:
    """``4th`` in regulation, ``OT``/``2OT`` past ``total_periods`` when it is known."""
    if total_periods and period > total_periods:
        extra = period - total_periods
        return "OT" if extra == 1 else f"{extra}OT"
    if 10 <= period % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(period % 10, "th")
    return f"{period}{suffix}"


def _result_line(event: DetectedEvent, fields: Dict[str, Any]) -> str:
    meta = event.metadata
    home_code, away_code = fields["homeCode"], fields["awayCode"]
    if meta.is_tie:
        return f"{away_code} and {home_code} tie {meta.home_score}-{meta.away_score}"
    if meta.home_score > meta.away_score:
        return f"{home_code} defeats {away_code} {meta.home_score}-{meta.away_score}"
    return f"{away_code} defeats {home_code} {meta.away_score}-{meta.home_score}"


def template_fields(event: DetectedEvent, snapshot: Optional[Snapshot] = None) -> Dict[str, Any]:
    """Placeholder values for rendering, from the event metadata and the snapshot when given."""
    meta = event.metadata
    codes = event.audience.participant_codes
    home_code = codes[0] if len(codes) > 0 else ""
    away_code = codes[1] if len(codes) > 1 else ""

    fields: Dict[str, Any] = {
        "sport": event.sport,
        "homeCode": home_code,
        "awayCode": away_code,
        "homeParticipant": home_code,
        "awayParticipant": away_code,
        "homeScore": meta.home_score,
        "awayScore": meta.away_score,
        "period": meta.period,
        "periodLabel": period_label(meta.period),
        "differential": meta.differential if meta.differential is not None else abs(meta.home_score - meta.away_score),
        "leadingParticipant": meta.leading_participant or "",
    }
    if snapshot is not None:
        fields.update(
            {
                "homeParticipant": snapshot.home.name or snapshot.home.code,
                "awayParticipant": snapshot.away.name or snapshot.away.code,
                "homeRecord": snapshot.home.record or "",
                "awayRecord": snapshot.away.record or "",
                "clock": snapshot.clock or "",
                "status": snapshot.status_detail or snapshot.status.value,
                "periodLabel": period_label(meta.period, snapshot.total_periods),
            }
        )

    leader = fields["leadingParticipant"]
    if leader:
        fields["trailingParticipant"] = away_code if leader == home_code else home_code
    fields["result"] = _result_line(event, fields)
    return fields


def render_message(
    event: DetectedEvent,
    registry: TemplateRegistry,
    *,
    snapshot: Optional[Snapshot] = None,
    use_emoji: bool = False,
) -> RenderedMessage:
    template = registry.select(event.kind, event.sport)
    fields = template_fields(event, snapshot)
    if template is None:
        title = event.kind.value.replace("_", " ").title()
        body = f"{fields['awayCode']} @ {fields['homeCode']}"
    else:
        title = render_template(template.title, fields)
        body = render_template(template.body, fields)

    if use_emoji and event.kind in EMOJI:
        title = f"{title} {EMOJI[event.kind]}"

    data = {
        "eventId": event.id,
        "eventType": event.kind.value,
        "gameId": event.snapshot_id,
        "sport": event.sport,
    }
    return RenderedMessage(title=title, body=body, data=data)
