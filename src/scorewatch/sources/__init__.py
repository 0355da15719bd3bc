"""Snapshot sources, one per sport, injected into the orchestrator."""

from .balldontlie import BallDontLieSource
from .base import SnapshotSource

__all__ = ["BallDontLieSource", "SnapshotSource"]
