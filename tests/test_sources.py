from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List

import httpx
import pytest

from scorewatch.errors import SourceUnavailable
from scorewatch.models import SnapshotStatus
from scorewatch.sources import BallDontLieSource, SnapshotSource
from scorewatch.sources.balldontlie import map_status

FETCHED_AT = dt.datetime(2024, 3, 10, 20, 0, tzinfo=dt.timezone.utc)


def _game(game_id: int = 1001, **overrides: Any) -> Dict[str, Any]:
    game = {
        "id": game_id,
        "date": "2024-03-10T19:30:00Z",
        "season": 2023,
        "status": "3rd Qtr",
        "period": 3,
        "time": "7:12 ",
        "postseason": False,
        "home_team": {
            "id": 14,
            "abbreviation": "LAL",
            "full_name": "Los Angeles Lakers",
            "city": "Los Angeles",
            "conference": "West",
        },
        "visitor_team": {
            "id": 2,
            "abbreviation": "BOS",
            "full_name": "Boston Celtics",
            "city": "Boston",
            "conference": "East",
        },
        "home_team_score": 78,
        "visitor_team_score": 81,
    }
    game.update(overrides)
    return game


def _source(handler, sleeps: List[float] | None = None) -> BallDontLieSource:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    recorder = sleeps if sleeps is not None else []
    return BallDontLieSource(
        "key",
        base_url="https://api.test/v1",
        client=client,
        clock=lambda: FETCHED_AT,
        sleep=recorder.append,
    )


@pytest.mark.parametrize(
    ("raw", "period", "expected"),
    [
        ("Final", 4, SnapshotStatus.FINAL),
        ("Final/OT", 5, SnapshotStatus.FINAL),
        ("2nd Qtr", 2, SnapshotStatus.LIVE),
        ("Halftime", 2, SnapshotStatus.LIVE),
        ("OT", 5, SnapshotStatus.LIVE),
        ("In Progress", 0, SnapshotStatus.LIVE),
        ("Postponed", 0, SnapshotStatus.POSTPONED),
        ("Cancelled", 0, SnapshotStatus.CANCELLED),
        ("2024-03-10T23:30:00Z", 0, SnapshotStatus.SCHEDULED),
        ("", 1, SnapshotStatus.LIVE),
    ],
)
def test_map_status(raw, period, expected) -> None:
    assert map_status(raw, period) is expected


def test_source_satisfies_protocol() -> None:
    source = _source(lambda request: httpx.Response(200, json={}))
    assert isinstance(source, SnapshotSource)


def test_fetch_builds_snapshot() -> None:
    requested: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return httpx.Response(200, json={"data": _game()})

    snapshot = _source(handler).fetch("nba_1001")

    assert requested == ["/v1/games/1001"]
    assert snapshot.id == "nba_1001"
    assert snapshot.sport == "NBA"
    assert snapshot.status is SnapshotStatus.LIVE
    assert snapshot.home.code == "LAL"
    assert snapshot.home.name == "Los Angeles Lakers"
    assert snapshot.away.score == 81
    assert snapshot.period == 3
    assert snapshot.total_periods == 4
    assert snapshot.clock == "7:12"
    assert snapshot.fetched_at == FETCHED_AT
    assert snapshot.extras["external_id"] == "1001"


def test_fetch_accepts_bare_payload() -> None:
    snapshot = _source(lambda request: httpx.Response(200, json=_game(status="Final", period=4))).fetch("nba_1001")
    assert snapshot.status is SnapshotStatus.FINAL


def test_fetch_rejects_foreign_id() -> None:
    with pytest.raises(SourceUnavailable) as excinfo:
        _source(lambda request: httpx.Response(200, json={})).fetch("nhl_55")
    assert excinfo.value.snapshot_id == "nhl_55"


def test_not_found_is_not_retried() -> None:
    calls: List[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(404, json={"error": "not found"})

    with pytest.raises(SourceUnavailable, match="not found"):
        _source(handler).fetch("nba_404")
    assert len(calls) == 1


def test_server_errors_are_retried_then_succeed() -> None:
    responses = [httpx.Response(502), httpx.Response(503), httpx.Response(200, json={"data": _game()})]
    sleeps: List[float] = []

    snapshot = _source(lambda request: responses.pop(0), sleeps).fetch("nba_1001")

    assert snapshot.home.score == 78
    assert sleeps == [1.0, 2.0]


def test_exhausted_retries_raise_source_unavailable() -> None:
    with pytest.raises(SourceUnavailable, match="after 3 attempts"):
        _source(lambda request: httpx.Response(500)).fetch("nba_1001")


def test_rate_limit_honours_retry_after() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json={"data": _game()}),
    ]
    sleeps: List[float] = []

    _source(lambda request: responses.pop(0), sleeps).fetch("nba_1001")

    assert sleeps == [7.0]


def test_malformed_payload_is_unavailable() -> None:
    with pytest.raises(SourceUnavailable, match="Unexpected game payload"):
        _source(lambda request: httpx.Response(200, json={"data": {"id": "x"}})).fetch("nba_1001")


def test_fetch_schedule() -> None:
    captured: Dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={"data": [_game(1, status="7:30 pm ET", period=0), _game(2, status="Final", period=4)]},
        )

    snapshots = _source(handler).fetch_schedule(dt.date(2024, 3, 10))

    assert captured["params"] == {"dates[]": "2024-03-10", "per_page": "100"}
    assert [snapshot.id for snapshot in snapshots] == ["nba_1", "nba_2"]
    assert [snapshot.status for snapshot in snapshots] == [SnapshotStatus.SCHEDULED, SnapshotStatus.FINAL]
