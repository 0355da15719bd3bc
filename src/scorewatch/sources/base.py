from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import Snapshot


@runtime_checkable
class SnapshotSource(Protocol):
    """Supplies normalized snapshots for one sport.

    ``fetch`` raises ``SourceUnavailable`` when the upstream cannot answer; any
    other exception is a bug in the source.
    """

    sport: str

    def fetch(self, snapshot_id: str) -> Snapshot: ...
