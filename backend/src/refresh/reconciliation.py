"""
Diff between the stored snapshot of a player and what the pass observed.

The functions here are pure: they take the previous snapshot and the fresh
bundle and return the transition records to write. Nothing is persisted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from gge_api.models import PRIMARY_CASTLE_TYPE, Castle, castles_from_json

ADD = "add"
REMOVE = "remove"
MOVE = "move"


@dataclass(frozen=True)
class KnownPlayer:
    """A player as stored by the previous pass."""

    player_id: int
    name: Optional[str]
    alliance_id: Optional[int]
    alliance_name: Optional[str] = None
    castles: Tuple[Castle, ...] = ()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "KnownPlayer":
        alliance = row.get("alliances") or {}
        return cls(
            player_id=int(row["id"]),
            name=row.get("name"),
            alliance_id=row.get("alliance_id"),
            alliance_name=alliance.get("name") if isinstance(alliance, dict) else None,
            castles=tuple(castles_from_json(row.get("castles"))),
        )


@dataclass(frozen=True)
class CastleMovement:
    player_id: int
    castle_type: int
    movement_type: str
    old_position: Optional[Tuple[int, int]] = None
    new_position: Optional[Tuple[int, int]] = None

    def to_row(self, created_at: str) -> Dict[str, Any]:
        old = self.old_position or (None, None)
        new = self.new_position or (None, None)
        return {
            "player_id": self.player_id,
            "castle_type": self.castle_type,
            "movement_type": self.movement_type,
            "position_x_old": old[0],
            "position_y_old": old[1],
            "position_x_new": new[0],
            "position_y_new": new[1],
            "created_at": created_at,
        }


@dataclass(frozen=True)
class Rename:
    player_id: int
    old_name: Optional[str]
    new_name: Optional[str]

    def to_row(self, created_at: str) -> Dict[str, Any]:
        return {
            "player_id": self.player_id,
            "old_name": self.old_name,
            "new_name": self.new_name,
            "created_at": created_at,
        }


@dataclass(frozen=True)
class AllianceTransfer:
    player_id: int
    old_alliance_id: Optional[int]
    new_alliance_id: Optional[int]
    new_alliance_name: Optional[str] = None

    def to_row(self, created_at: str) -> Dict[str, Any]:
        return {
            "player_id": self.player_id,
            "old_alliance_id": self.old_alliance_id,
            "new_alliance_id": self.new_alliance_id,
            "created_at": created_at,
        }


@dataclass(frozen=True)
class AllianceRename:
    alliance_id: int
    old_name: Optional[str]
    new_name: Optional[str]

    def to_row(self, created_at: str) -> Dict[str, Any]:
        return {
            "alliance_id": self.alliance_id,
            "old_name": self.old_name,
            "new_name": self.new_name,
            "created_at": created_at,
        }


@dataclass
class Reconciliation:
    """Transitions produced for one player."""

    player_id: int
    renames: List[Rename] = field(default_factory=list)
    alliance_transfer: Optional[AllianceTransfer] = None
    alliance_rename: Optional[AllianceRename] = None
    movements: List[CastleMovement] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.renames or self.alliance_transfer or self.alliance_rename or self.movements)


def _primary(castles: Iterable[Castle]) -> Optional[Castle]:
    for castle in castles:
        if castle.type == PRIMARY_CASTLE_TYPE:
            return castle
    return None


def get_castle_movements(
    player_id: int,
    previous: Iterable[Castle],
    fresh: Iterable[Castle]
) -> List[CastleMovement]:
    """
    Structural deltas between two castle lists.

    A relocated primary castle yields exactly one ``move`` and is left out
    of the add/remove accounting. Every other castle is compared as a set
    keyed by ``(x, y, type)``.
    """
    previous = [Castle(*c) for c in previous]
    fresh = [Castle(*c) for c in fresh]
    movements: List[CastleMovement] = []

    old_primary = _primary(previous)
    new_primary = _primary(fresh)
    if old_primary and new_primary and (old_primary.x, old_primary.y) != (new_primary.x, new_primary.y):
        movements.append(CastleMovement(
            player_id=player_id,
            castle_type=PRIMARY_CASTLE_TYPE,
            movement_type=MOVE,
            old_position=(old_primary.x, old_primary.y),
            new_position=(new_primary.x, new_primary.y),
        ))
        previous = [c for c in previous if c.type != PRIMARY_CASTLE_TYPE]
        fresh = [c for c in fresh if c.type != PRIMARY_CASTLE_TYPE]

    previous_keys = set(previous)
    fresh_keys = set(fresh)
    for castle in sorted(previous_keys - fresh_keys):
        movements.append(CastleMovement(
            player_id=player_id,
            castle_type=castle.type,
            movement_type=REMOVE,
            old_position=(castle.x, castle.y),
        ))
    for castle in sorted(fresh_keys - previous_keys):
        movements.append(CastleMovement(
            player_id=player_id,
            castle_type=castle.type,
            movement_type=ADD,
            new_position=(castle.x, castle.y),
        ))
    return movements


def reconcile(
    previous: Optional[KnownPlayer],
    fresh,
    already_renamed: Set[int] = frozenset(),
    already_renamed_alliances: Set[int] = frozenset()
) -> Reconciliation:
    """
    Compare a stored player with its fresh bundle.

    Args:
        previous: Stored snapshot, ``None`` on first observation
        fresh: Bundle or observation with ``name``, ``alliance_id``,
            ``alliance_name`` and ``castles``
        already_renamed: Players already flagged renamed this pass
        already_renamed_alliances: Alliances already flagged renamed this pass
    """
    result = Reconciliation(player_id=fresh.player_id)
    if previous is None:
        return result

    if (
        fresh.name is not None
        and previous.name != fresh.name
        and fresh.player_id not in already_renamed
    ):
        result.renames.append(Rename(fresh.player_id, previous.name, fresh.name))

    if previous.alliance_id != fresh.alliance_id:
        result.alliance_transfer = AllianceTransfer(
            player_id=fresh.player_id,
            old_alliance_id=previous.alliance_id,
            new_alliance_id=fresh.alliance_id,
            new_alliance_name=fresh.alliance_name,
        )
    elif (
        fresh.alliance_id is not None
        and fresh.alliance_name
        and previous.alliance_name is not None
        and previous.alliance_name != fresh.alliance_name
        and fresh.alliance_id not in already_renamed_alliances
    ):
        result.alliance_rename = AllianceRename(fresh.alliance_id, previous.alliance_name, fresh.alliance_name)

    # Castles not reported this pass are unknown, not gone
    if fresh.castles is not None:
        result.movements = get_castle_movements(fresh.player_id, previous.castles, fresh.castles)
    return result


class ReconciliationEngine:
    """Applies ``reconcile`` with the pass-wide rename flags."""

    def __init__(self):
        self.renamed_players: Set[int] = set()
        self.renamed_alliances: Set[int] = set()

    def reconcile(self, previous: Optional[KnownPlayer], fresh) -> Reconciliation:
        result = reconcile(previous, fresh, self.renamed_players, self.renamed_alliances)
        for rename in result.renames:
            self.renamed_players.add(rename.player_id)
        if result.alliance_rename is not None:
            self.renamed_alliances.add(result.alliance_rename.alliance_id)
        return result

    def reset(self):
        self.renamed_players.clear()
        self.renamed_alliances.clear()
