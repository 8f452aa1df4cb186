"""
Pass-scoped state shared by the refresh stages.

A ``PassContext`` is created when a pass starts and dropped when it ends;
nothing in it outlives the pass or is shared between servers.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from refresh.accumulator import SnapshotAccumulator
from refresh.reconciliation import KnownPlayer, ReconciliationEngine


@dataclass
class PassCounters:
    """Counts surfaced in the end-of-pass log line and statistics row."""

    errors: int = 0
    critical_errors: int = 0
    players_created: int = 0
    alliances_created: int = 0
    players_alliance_updated: int = 0
    players_renamed: int = 0
    alliances_updated: int = 0
    castle_movements: int = 0
    players_updated: int = 0
    players_cleared: int = 0

    def as_log_fields(self) -> Dict[str, int]:
        return {
            "players_created": self.players_created,
            "alliances_created": self.alliances_created,
            "players_alliance_updated": self.players_alliance_updated,
            "alliances_updated": self.alliances_updated,
            "players_renamed": self.players_renamed,
            "castle_movements": self.castle_movements,
            "players_updated": self.players_updated,
            "players_cleared": self.players_cleared,
            "errors": self.errors,
            "critical_errors": self.critical_errors,
        }


@dataclass
class PassContext:
    """Everything one pass reads and writes in memory."""

    server: str
    pass_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    accumulator: SnapshotAccumulator = field(default_factory=SnapshotAccumulator)
    engine: ReconciliationEngine = field(default_factory=ReconciliationEngine)
    previous: Dict[int, KnownPlayer] = field(default_factory=dict)
    counters: PassCounters = field(default_factory=PassCounters)
    population: Optional[int] = None
    # Metric history writes still running in the background
    history_tasks: List = field(default_factory=list)

    @property
    def created_at(self) -> str:
        """Timestamp shared by every history row of the pass."""
        return self.started_at.isoformat()

    @property
    def is_clean(self) -> bool:
        return self.counters.critical_errors == 0
