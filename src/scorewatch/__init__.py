"""Scorewatch core package.

Turns successive snapshots of sporting events into push notifications:

- **detector**: Pure comparison of two snapshots into detected events
- **audience**: Filters subscribers by sport, teams, event kinds and quiet hours
- **dispatcher**: Renders messages and delivers them in batches through a gateway
- **orchestrator**: Runs a polling cycle and guards delivery with the ledger
- **persistence**: SQLite stores for snapshots, the ledger and subscribers
- **sources**: Upstream snapshot sources (balldontlie for the NBA)
- **templates**: Message templates and rendering

The main entry point is the ``Orchestrator`` class; ``scorewatch.cli`` wires it
from a YAML config.
"""

from .detector import detect
from .orchestrator import CycleSummary, Orchestrator
from .version import __version__

__all__ = [
    "__version__",
    "CycleSummary",
    "Orchestrator",
    "detect",
]
