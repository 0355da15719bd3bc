"""NBA snapshots from the balldontlie REST API."""

from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import SourceUnavailable
from ..models import Participant, Snapshot, SnapshotStatus

LOGGER = logging.getLogger(__name__)

API_BASE_URL = "https://api.balldontlie.io/v1"
SPORT = "NBA"
SNAPSHOT_PREFIX = "nba_"
REGULATION_PERIODS = 4

MAX_RETRIES = 3
RETRY_BACKOFF = 1.0

_LIVE_MARKERS = ("progress", "live", "qtr", "quarter", "half")


class TeamResponse(BaseModel):
    """API response model for a team."""

    model_config = ConfigDict(extra="ignore")

    id: int
    abbreviation: str
    full_name: str
    city: Optional[str] = None
    conference: Optional[str] = None
    division: Optional[str] = None
    name: Optional[str] = None


class GameResponse(BaseModel):
    """API response model for a game."""

    model_config = ConfigDict(extra="ignore")

    id: int
    date: str
    season: Optional[int] = None
    status: str = ""
    period: int = 0
    time: Optional[str] = None
    postseason: bool = False
    home_team: TeamResponse
    visitor_team: TeamResponse
    home_team_score: int = 0
    visitor_team_score: int = 0


class GameListResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[GameResponse] = Field(default_factory=list)


def map_status(raw_status: str, period: int) -> SnapshotStatus:
    """Map a balldontlie status string to a snapshot status.

    Scheduled games report their tip-off time as the status, so anything
    unrecognised with no period played counts as scheduled.
    """
    lowered = (raw_status or "").strip().lower()
    if "final" in lowered:
        return SnapshotStatus.FINAL
    if "postponed" in lowered:
        return SnapshotStatus.POSTPONED
    if "cancel" in lowered:
        return SnapshotStatus.CANCELLED
    if any(marker in lowered for marker in _LIVE_MARKERS) or "ot" in lowered.split():
        return SnapshotStatus.LIVE
    if period > 0:
        return SnapshotStatus.LIVE
    return SnapshotStatus.SCHEDULED


def _parse_date(value: str) -> Optional[dt.datetime]:
    try:
        parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def game_to_snapshot(game: GameResponse, fetched_at: dt.datetime) -> Snapshot:
    status = map_status(game.status, game.period)
    return Snapshot(
        id=f"{SNAPSHOT_PREFIX}{game.id}",
        sport=SPORT,
        status=status,
        home=Participant(
            name=game.home_team.full_name,
            code=game.home_team.abbreviation,
            score=game.home_team_score,
        ),
        away=Participant(
            name=game.visitor_team.full_name,
            code=game.visitor_team.abbreviation,
            score=game.visitor_team_score,
        ),
        period=game.period,
        total_periods=REGULATION_PERIODS,
        clock=(game.time or "").strip() or None,
        fetched_at=fetched_at,
        status_detail=game.status or None,
        scheduled_at=_parse_date(game.date),
        is_playoff=game.postseason,
        extras={
            "external_id": str(game.id),
            "season": game.season,
            "home_conference": game.home_team.conference,
            "away_conference": game.visitor_team.conference,
            "city": game.home_team.city,
        },
    )


class BallDontLieSource:
    """Snapshot source for NBA games.

    Snapshot ids look like ``nba_<game id>``. Requests are retried with
    exponential backoff; once retries are exhausted, or when a response can't
    be parsed, ``SourceUnavailable`` is raised.
    """

    sport = SPORT

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = API_BASE_URL,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        headers = {"Authorization": api_key} if api_key else {}
        if not api_key:
            LOGGER.warning("No balldontlie API key configured; free tier limits apply")
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout, headers=headers)
        self._owns_client = client is None
        self._clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))
        self._sleep = sleep

    def _request(self, path: str, *, params: Optional[dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        last_exception: Exception | None = None
        backoff = RETRY_BACKOFF

        for attempt in range(MAX_RETRIES):
            try:
                response = self._client.get(url, params=params)
                if response.status_code == 404:
                    raise SourceUnavailable(f"Resource not found: {path}")
                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", backoff))
                    LOGGER.warning("Rate limited by balldontlie, waiting %.1f seconds", retry_after)
                    self._sleep(retry_after)
                    backoff = min(backoff * 2, 30.0)
                    last_exception = httpx.HTTPStatusError(
                        "rate limited", request=response.request, response=response
                    )
                    continue
                response.raise_for_status()
                return response.json()
            except (httpx.HTTPStatusError, httpx.RequestError, ValueError) as exc:
                last_exception = exc
                if attempt < MAX_RETRIES - 1:
                    LOGGER.debug("Request failed (attempt %d/%d): %s", attempt + 1, MAX_RETRIES, exc)
                    self._sleep(backoff)
                    backoff = min(backoff * 2, 30.0)

        raise SourceUnavailable(f"Failed to fetch {path} after {MAX_RETRIES} attempts: {last_exception}")

    def fetch(self, snapshot_id: str) -> Snapshot:
        if not snapshot_id.startswith(SNAPSHOT_PREFIX):
            raise SourceUnavailable(f"Not an NBA snapshot id: {snapshot_id}", snapshot_id=snapshot_id)
        game_id = snapshot_id[len(SNAPSHOT_PREFIX) :]

        try:
            payload = self._request(f"/games/{game_id}")
        except SourceUnavailable as exc:
            raise SourceUnavailable(str(exc), snapshot_id=snapshot_id) from exc

        # v1 wraps single games in {"data": {...}}; older responses were bare
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        try:
            game = GameResponse.model_validate(payload)
        except ValidationError as exc:
            raise SourceUnavailable(f"Unexpected game payload for {snapshot_id}", snapshot_id=snapshot_id) from exc

        snapshot = game_to_snapshot(game, self._clock())
        LOGGER.debug(
            "Fetched %s: %s %d - %s %d (%s)",
            snapshot.id,
            snapshot.away.code,
            snapshot.away.score,
            snapshot.home.code,
            snapshot.home.score,
            snapshot.status.value,
        )
        return snapshot

    def fetch_schedule(self, date: dt.date) -> list[Snapshot]:
        """All games scheduled on ``date``."""
        payload = self._request("/games", params={"dates[]": date.isoformat(), "per_page": 100})
        try:
            games = GameListResponse.model_validate(payload).data
        except ValidationError as exc:
            raise SourceUnavailable(f"Unexpected schedule payload for {date.isoformat()}") from exc
        fetched_at = self._clock()
        snapshots = [game_to_snapshot(game, fetched_at) for game in games]
        LOGGER.info("Found %d NBA game(s) for %s", len(snapshots), date.isoformat())
        return snapshots

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
