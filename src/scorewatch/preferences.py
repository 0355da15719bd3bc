from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .config import parse_time_of_day
from .models import EventKind

MAX_RIVALS = 3


@dataclass(frozen=True, slots=True)
class QuietHours:
    enabled: bool
    start: dt.time
    end: dt.time
    timezone: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SportPreference:
    """Per-sport subscription settings.

    Attributes:
        enabled: Whether the subscriber wants this sport at all
        favorite: Favorite participant code (e.g. "LAL")
        rivals: Up to three rival participant codes
        teams: Legacy followed-participant list
        event_kinds: Optional allow-list of event kinds
    """

    enabled: bool = True
    favorite: Optional[str] = None
    rivals: tuple[str, ...] = ()
    teams: Optional[tuple[str, ...]] = None
    event_kinds: Optional[frozenset[EventKind]] = None

    @property
    def rivalry_mode(self) -> bool:
        return bool(self.favorite) and bool(self.rivals)


@dataclass(frozen=True, slots=True)
class SubscriberPreference:
    subscriber_id: str
    address: str
    enabled: bool = True
    sports: Dict[str, SportPreference] = field(default_factory=dict, hash=False)
    event_overrides: Dict[EventKind, bool] = field(default_factory=dict, hash=False)
    quiet_hours: Optional[QuietHours] = None
    platform: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    def sport(self, sport: str) -> Optional[SportPreference]:
        return self.sports.get(sport.upper())


def _codes(value: Any, *, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"'{field_name}' must be a list of participant codes")
    return tuple(str(code).strip().upper() for code in value if str(code).strip())


def _event_kinds(value: Any, *, field_name: str) -> Optional[frozenset[EventKind]]:
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"'{field_name}' must be a list of event kinds")
    kinds: set[EventKind] = set()
    for entry in value:
        try:
            kinds.add(EventKind(str(entry).strip().upper()))
        except ValueError as exc:
            raise ValueError(f"'{field_name}' contains unknown event kind '{entry}'") from exc
    return frozenset(kinds)


def _sport_preference(data: Dict[str, Any], *, field_name: str) -> SportPreference:
    if not isinstance(data, dict):
        raise ValueError(f"'{field_name}' must be a mapping")
    favorite = data.get("favorite") or data.get("favoriteTeam")
    rivals = _codes(data.get("rivals", data.get("rivalTeams")), field_name=f"{field_name}.rivals")
    if len(rivals) > MAX_RIVALS:
        raise ValueError(f"'{field_name}.rivals' accepts at most {MAX_RIVALS} entries")
    teams_raw = data.get("teams")
    return SportPreference(
        enabled=bool(data.get("enabled", True)),
        favorite=str(favorite).strip().upper() if favorite else None,
        rivals=rivals,
        teams=_codes(teams_raw, field_name=f"{field_name}.teams") if teams_raw is not None else None,
        event_kinds=_event_kinds(
            data.get("event_kinds", data.get("eventTypes")), field_name=f"{field_name}.event_kinds"
        ),
    )


def _quiet_hours(data: Any) -> Optional[QuietHours]:
    if not data:
        return None
    if not isinstance(data, dict):
        raise ValueError("'quiet_hours' must be a mapping")
    return QuietHours(
        enabled=bool(data.get("enabled", False)),
        start=parse_time_of_day(data.get("start"), field_name="quiet_hours.start"),
        end=parse_time_of_day(data.get("end"), field_name="quiet_hours.end"),
        timezone=data.get("timezone"),
    )


def _timestamp(value: Any) -> Optional[dt.datetime]:
    if value is None or isinstance(value, dt.datetime):
        return value
    return dt.datetime.fromisoformat(str(value))


def preference_from_dict(data: Dict[str, Any]) -> SubscriberPreference:
    """Build a SubscriberPreference from a stored document.

    Accepts both snake_case keys and the camelCase keys older clients wrote.
    """
    subscriber_id = data.get("subscriber_id") or data.get("userId")
    address = data.get("address") or data.get("fcmToken")
    if not subscriber_id or not address:
        raise ValueError("Subscriber documents require 'subscriber_id' and 'address'")

    sports_raw = data.get("sports") or {}
    if not isinstance(sports_raw, dict):
        raise ValueError("'sports' must be a mapping of sport -> settings")
    sports = {
        str(sport).strip().upper(): _sport_preference(entry or {}, field_name=f"sports.{sport}")
        for sport, entry in sports_raw.items()
    }

    overrides_raw = data.get("event_overrides", data.get("eventTypePreferences")) or {}
    overrides: Dict[EventKind, bool] = {}
    for key, value in overrides_raw.items():
        try:
            overrides[EventKind(str(key).strip().upper())] = bool(value)
        except ValueError as exc:
            raise ValueError(f"'event_overrides' contains unknown event kind '{key}'") from exc

    return SubscriberPreference(
        subscriber_id=str(subscriber_id),
        address=str(address),
        enabled=bool(data.get("enabled", True)),
        sports=sports,
        event_overrides=overrides,
        quiet_hours=_quiet_hours(data.get("quiet_hours", data.get("quietHours"))),
        platform=data.get("platform"),
        created_at=_timestamp(data.get("created_at")),
        updated_at=_timestamp(data.get("updated_at")),
    )


def preference_to_dict(preference: SubscriberPreference) -> Dict[str, Any]:
    sports: Dict[str, Any] = {}
    for sport, entry in preference.sports.items():
        sports[sport] = {
            "enabled": entry.enabled,
            "favorite": entry.favorite,
            "rivals": list(entry.rivals),
            "teams": list(entry.teams) if entry.teams is not None else None,
            "event_kinds": sorted(kind.value for kind in entry.event_kinds) if entry.event_kinds is not None else None,
        }
    quiet = preference.quiet_hours
    return {
        "subscriber_id": preference.subscriber_id,
        "address": preference.address,
        "enabled": preference.enabled,
        "sports": sports,
        "event_overrides": {kind.value: value for kind, value in preference.event_overrides.items()},
        "quiet_hours": (
            {
                "enabled": quiet.enabled,
                "start": quiet.start.strftime("%H:%M:%S"),
                "end": quiet.end.strftime("%H:%M:%S"),
                "timezone": quiet.timezone,
            }
            if quiet
            else None
        ),
        "platform": preference.platform,
        "created_at": preference.created_at.isoformat() if preference.created_at else None,
        "updated_at": preference.updated_at.isoformat() if preference.updated_at else None,
    }


def default_preferences(
    subscriber_id: str,
    address: str,
    *,
    platform: Optional[str] = None,
    now: Optional[dt.datetime] = None,
) -> SubscriberPreference:
    """Preferences given to a newly registered device: NBA, the four headline kinds."""
    timestamp = now or dt.datetime.now(dt.timezone.utc)
    return SubscriberPreference(
        subscriber_id=subscriber_id,
        address=address,
        enabled=True,
        sports={
            "NBA": SportPreference(
                enabled=True,
                event_kinds=frozenset(
                    {EventKind.GAME_START, EventKind.GAME_END, EventKind.CLOSE_GAME, EventKind.BLOWOUT}
                ),
            )
        },
        platform=platform,
        created_at=timestamp,
        updated_at=timestamp,
    )

