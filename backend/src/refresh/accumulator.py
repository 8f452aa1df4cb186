"""
Pass-scoped accumulation of observed players.

Every observation overwrites the shared attributes of a player's bundle
wholesale; the all-time fields are max-combined with whatever the pass has
already seen. Event scores are kept in a secondary map so the statistics
step sees the union of every event fetched earlier in the run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional

from gge_api.models import Castle, PlayerObservation, RealmCastle


@dataclass
class PlayerBundle:
    """Latest attributes observed for one player during the pass."""

    player_id: int
    name: Optional[str] = None
    alliance_id: Optional[int] = None
    alliance_name: Optional[str] = None
    castles: Optional[List[Castle]] = None
    realm_castles: Optional[List[RealmCastle]] = None
    honor: int = 0
    level: int = 0
    legendary_level: int = 0
    current_fame: int = 0
    remaining_peace_time: int = 0
    remaining_relocation_time: int = 0
    peace_disabled_at: Optional[str] = None
    alliance_rank: Optional[int] = None
    might_current: Optional[int] = None
    loot_current: Optional[int] = None
    might_all_time: int = 0
    loot_all_time: int = 0
    max_honor: int = 0
    highest_fame: int = 0

    @property
    def castle_count(self) -> int:
        return len(self.castles or [])

    def to_staging_row(self, pass_id: str) -> Dict:
        """Row for the ``players_staging`` table."""
        return {
            "pass_id": pass_id,
            "id": self.player_id,
            "might_current": self.might_current,
            "might_all_time": self.might_all_time,
            "loot_current": self.loot_current,
            "loot_all_time": self.loot_all_time,
            "honor": self.honor,
            "max_honor": self.max_honor,
            "level": self.level,
            "legendary_level": self.legendary_level,
            "current_fame": self.current_fame,
            "highest_fame": self.highest_fame,
            "castles": [list(c) for c in self.castles] if self.castles is not None else None,
            "castles_realm": (
                [list(c) for c in self.realm_castles] if self.realm_castles is not None else None
            ),
            "remaining_peace_time": self.remaining_peace_time,
            "remaining_relocation_time": self.remaining_relocation_time,
            "peace_disabled_at": self.peace_disabled_at,
        }


class SnapshotAccumulator:
    """In-memory ``player_id -> PlayerBundle`` map for one pass."""

    def __init__(self, now=None):
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._bundles: Dict[int, PlayerBundle] = {}
        self._event_scores: Dict[int, Dict[str, int]] = {}

    def observe(
        self,
        observation: PlayerObservation,
        loot: Optional[int] = None,
        might: Optional[int] = None
    ) -> PlayerBundle:
        """
        Merge one observation into the player's bundle.

        Args:
            observation: Parsed player block
            loot: Loot points when the observation comes from the loot ranking
            might: Might points when the observation comes from the might ranking
        """
        bundle = self._bundles.get(observation.player_id)
        if bundle is None:
            bundle = PlayerBundle(player_id=observation.player_id)
            self._bundles[observation.player_id] = bundle

        bundle.name = observation.name
        bundle.alliance_id = observation.alliance_id
        bundle.alliance_name = observation.alliance_name
        # Rows without an AP field leave the last reported structures untouched
        if observation.castles is not None:
            bundle.castles = list(observation.castles)
            bundle.realm_castles = list(observation.realm_castles or [])
        bundle.honor = observation.honor
        bundle.level = observation.level
        bundle.legendary_level = observation.legendary_level
        bundle.current_fame = observation.current_fame
        bundle.remaining_peace_time = observation.remaining_peace_time
        bundle.remaining_relocation_time = observation.remaining_relocation_time
        bundle.alliance_rank = observation.alliance_rank
        if observation.remaining_peace_time > 0:
            disabled_at = self._now() + timedelta(seconds=observation.remaining_peace_time)
            bundle.peace_disabled_at = disabled_at.isoformat()
        else:
            bundle.peace_disabled_at = None

        if loot is not None:
            bundle.loot_current = loot
            bundle.loot_all_time = max(bundle.loot_all_time, loot)
        if might is not None:
            bundle.might_current = might
            bundle.might_all_time = max(bundle.might_all_time, might)
        bundle.max_honor = max(bundle.max_honor, observation.honor)
        bundle.highest_fame = max(bundle.highest_fame, observation.highest_fame)
        return bundle

    def observe_event_score(self, player_id: int, event_key: str, score: int):
        self._event_scores.setdefault(player_id, {})[event_key] = score

    def get(self, player_id: int) -> Optional[PlayerBundle]:
        return self._bundles.get(player_id)

    def bundles(self) -> List[PlayerBundle]:
        return list(self._bundles.values())

    def event_scores(self) -> Dict[int, Dict[str, int]]:
        return {player_id: dict(scores) for player_id, scores in self._event_scores.items()}

    def __contains__(self, player_id: int) -> bool:
        return player_id in self._bundles

    def __iter__(self) -> Iterator[PlayerBundle]:
        return iter(list(self._bundles.values()))

    def __len__(self) -> int:
        return len(self._bundles)

    def reset(self):
        self._bundles.clear()
        self._event_scores.clear()
