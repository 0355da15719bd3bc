"""Audience resolution: which subscribers receive a detected event.

Checks run in a fixed order and stop at the first failure:

1. master enable flag
2. sport configured and enabled
3. team relevance (rivalry matchup, else legacy followed list, else global feed)
4. per-sport event-kind allow-list
5. global per-kind override (explicit ``False`` denies)
6. quiet hours in the subscriber's local time
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable, Sequence
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .models import DetectedEvent
from .preferences import QuietHours, SportPreference, SubscriberPreference

LOGGER = logging.getLogger(__name__)


def is_rivalry_matchup(sport_pref: SportPreference, codes: Sequence[str]) -> bool:
    """True when the favorite plays on one side and a declared rival on the other."""
    if len(codes) < 2:
        return False
    home, away = codes[0], codes[1]
    favorite = sport_pref.favorite
    rivals = sport_pref.rivals
    return (home == favorite and away in rivals) or (away == favorite and home in rivals)


def is_team_relevant(sport_pref: SportPreference, codes: Sequence[str]) -> bool:
    if sport_pref.rivalry_mode:
        # Rivalry mode is exclusive once configured.
        return is_rivalry_matchup(sport_pref, codes)
    if sport_pref.teams:
        return any(code in sport_pref.teams for code in codes)
    return True


def _local_time(now: dt.datetime, timezone_name: Optional[str]) -> dt.time:
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)
    zone: dt.tzinfo = dt.timezone.utc
    if timezone_name:
        try:
            zone = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            LOGGER.debug("Unknown quiet-hours timezone %r; falling back to UTC", timezone_name)
    return now.astimezone(zone).time().replace(tzinfo=None)


def in_quiet_hours(quiet: Optional[QuietHours], now: dt.datetime) -> bool:
    """Return True when ``now`` falls inside the half-open window ``[start, end)``.

    A window whose start is later than its end wraps past midnight.
    """
    if quiet is None or not quiet.enabled:
        return False
    current = _local_time(now, quiet.timezone)
    start, end = quiet.start, quiet.end
    if start > end:
        return current >= start or current < end
    return start <= current < end


def should_notify(preference: SubscriberPreference, event: DetectedEvent, now: dt.datetime) -> bool:
    if not preference.enabled:
        return False

    sport_pref = preference.sport(event.sport)
    if sport_pref is None or not sport_pref.enabled:
        return False

    if not is_team_relevant(sport_pref, event.audience.participant_codes):
        return False

    if sport_pref.event_kinds is not None and event.kind not in sport_pref.event_kinds:
        return False

    if preference.event_overrides.get(event.kind) is False:
        return False

    if in_quiet_hours(preference.quiet_hours, now):
        return False

    return True


def resolve(
    event: DetectedEvent,
    subscribers: Iterable[SubscriberPreference],
    *,
    now: Optional[dt.datetime] = None,
) -> list[SubscriberPreference]:
    """Return the subscribers eligible for ``event``, one entry per subscriber id.

    Input order is preserved; when a subscriber appears more than once the
    first occurrence wins.
    """
    moment = now or dt.datetime.now(dt.timezone.utc)
    seen: set[str] = set()
    audience: list[SubscriberPreference] = []
    rejected = 0
    for preference in subscribers:
        if preference.subscriber_id in seen:
            continue
        seen.add(preference.subscriber_id)
        if should_notify(preference, event, moment):
            audience.append(preference)
        else:
            rejected += 1

    LOGGER.debug(
        "Resolved audience for %s: %d eligible, %d filtered",
        event.id,
        len(audience),
        rejected,
    )
    return audience
