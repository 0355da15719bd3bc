from __future__ import annotations

import datetime as dt
from typing import Callable, Optional

import pytest

from scorewatch.models import Participant, Snapshot, SnapshotStatus

BASE_TIME = dt.datetime(2024, 3, 10, 19, 0, tzinfo=dt.timezone.utc)

SnapshotFactory = Callable[..., Snapshot]


@pytest.fixture
def make_snapshot() -> SnapshotFactory:
    """Build NBA-style snapshots; each call advances fetched_at by one minute unless given."""
    counter = {"minutes": 0}

    def factory(
        status: SnapshotStatus = SnapshotStatus.LIVE,
        home_score: int = 0,
        away_score: int = 0,
        *,
        period: int = 1,
        total_periods: int = 4,
        snapshot_id: str = "nba_1001",
        home: str = "LAL",
        away: str = "BOS",
        clock: Optional[str] = "5:00",
        fetched_at: Optional[dt.datetime] = None,
    ) -> Snapshot:
        if fetched_at is None:
            fetched_at = BASE_TIME + dt.timedelta(minutes=counter["minutes"])
            counter["minutes"] += 1
        return Snapshot(
            id=snapshot_id,
            sport="NBA",
            status=status,
            home=Participant(name=f"{home} Team", code=home, score=home_score),
            away=Participant(name=f"{away} Team", code=away, score=away_score),
            period=period,
            total_periods=total_periods,
            clock=clock,
            fetched_at=fetched_at,
        )

    return factory
