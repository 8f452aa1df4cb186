"""
Typed records for the empire API payloads.

The remote encodes most of its data as positional arrays (ranking rows are
``[rank, points, info]``, castle entries are ``[kingdom, id, x, y, type]``,
map objects are ``[type, x, y, ..., cooldown, owner]``). Everything is parsed
into named records here so nothing past this module indexes raw arrays.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional

# Loot points are a 32-bit counter on the remote; large values wrap negative.
LOOT_OVERFLOW_OFFSET = 2 ** 32

PRIMARY_CASTLE_TYPE = 1
MAIN_KINGDOM_ID = 0
REALM_KINGDOM_IDS = (1, 2, 3, 4)
DUNGEON_OBJECT_TYPE = 11


class PayloadError(ValueError):
    """Raised when a payload fragment does not have the expected shape."""
    pass


class Castle(NamedTuple):
    """A structure in the main kingdom."""
    x: int
    y: int
    type: int


class RealmCastle(NamedTuple):
    """A structure in one of the realm kingdoms."""
    kingdom: int
    x: int
    y: int
    type: int


@dataclass(frozen=True)
class PlayerObservation:
    """One player as reported by a ranking row or a player detail call."""

    player_id: int
    name: Optional[str]
    alliance_id: Optional[int]
    alliance_name: Optional[str]
    might: int
    castles: Optional[List[Castle]]
    realm_castles: Optional[List[RealmCastle]]
    honor: int = 0
    remaining_peace_time: int = 0
    level: int = 0
    legendary_level: int = 0
    highest_fame: int = 0
    current_fame: int = 0
    remaining_relocation_time: int = 0
    alliance_rank: Optional[int] = None
    # Only player detail calls carry loot points inside the player block
    loot: Optional[int] = None


@dataclass(frozen=True)
class RankingRow:
    rank: int
    points: int
    player: PlayerObservation


@dataclass(frozen=True)
class DungeonObservation:
    kingdom: int
    x: int
    y: int
    attack_cooldown: int
    player_id: Optional[int]


def _int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def normalize_alliance_id(value: Any) -> Optional[int]:
    """The remote reports ``-1`` (or nothing) for players without an alliance."""
    alliance_id = _int(value, default=-1)
    return alliance_id if alliance_id > 0 else None


def parse_castles(entries: Any):
    """
    Split an ``AP`` list into main-kingdom castles and realm castles.

    Returns:
        Tuple ``(castles, realm_castles)``; both ``None`` when the payload
        carries no ``AP`` field. An empty ``AP`` means the player holds
        nothing and yields two empty lists.
    """
    if entries is None:
        return None, None
    castles: List[Castle] = []
    realm_castles: List[RealmCastle] = []
    for entry in entries:
        if not isinstance(entry, (list, tuple)) or len(entry) < 5:
            raise PayloadError(f"Unexpected castle entry: {entry!r}")
        kingdom = _int(entry[0], default=-1)
        if kingdom == MAIN_KINGDOM_ID:
            castles.append(Castle(_int(entry[2]), _int(entry[3]), _int(entry[4])))
        elif kingdom in REALM_KINGDOM_IDS:
            realm_castles.append(
                RealmCastle(kingdom, _int(entry[2]), _int(entry[3]), _int(entry[4]))
            )
    return castles, realm_castles


def parse_player_info(info: Dict[str, Any]) -> PlayerObservation:
    """Parse the player block (``OID``, ``N``, ``AID``, ``AP``...) of a payload."""
    if not isinstance(info, dict) or info.get("OID") is None:
        raise PayloadError(f"Player block without OID: {info!r}")
    castles, realm_castles = parse_castles(info.get("AP"))
    alliance_rank = info.get("AR")
    alliance_rank = _int(alliance_rank, default=-1) if alliance_rank is not None else None
    if alliance_rank is not None and not 0 <= alliance_rank <= 100:
        alliance_rank = -1
    return PlayerObservation(
        player_id=_int(info["OID"]),
        name=info.get("N"),
        alliance_id=normalize_alliance_id(info.get("AID")),
        alliance_name=info.get("AN") or None,
        might=_int(info.get("MP")),
        castles=castles,
        realm_castles=realm_castles,
        honor=_int(info.get("H")),
        remaining_peace_time=_int(info.get("RPT")),
        level=_int(info.get("L")),
        legendary_level=_int(info.get("LL")),
        highest_fame=_int(info.get("HF")),
        current_fame=_int(info.get("CF")),
        remaining_relocation_time=_int(info.get("RRD")),
        alliance_rank=alliance_rank,
        loot=_int(info["P"]) if info.get("P") is not None else None,
    )


def unwrap_loot_points(raw: int) -> int:
    return raw if raw >= 0 else raw + LOOT_OVERFLOW_OFFSET


def parse_ranking_row(row: Any) -> RankingRow:
    """Parse one ``[rank, points, info]`` entry of a highscore ``L`` list."""
    if not isinstance(row, (list, tuple)) or len(row) < 3:
        raise PayloadError(f"Unexpected ranking row: {row!r}")
    return RankingRow(rank=_int(row[0]), points=_int(row[1]), player=parse_player_info(row[2]))


def parse_player_details(content: Optional[Dict[str, Any]]) -> Optional[PlayerObservation]:
    """Parse a ``gdi`` content object; ``None`` when the player no longer resolves."""
    if not content or not content.get("O"):
        return None
    return parse_player_info(content["O"])


def parse_dungeons(content: Optional[Dict[str, Any]], kingdom: int) -> List[DungeonObservation]:
    """Extract dungeons from a ``gaa`` map area content object."""
    dungeons: List[DungeonObservation] = []
    for entry in (content or {}).get("AI") or []:
        if not isinstance(entry, (list, tuple)) or len(entry) < 7:
            continue
        if _int(entry[0], default=-1) != DUNGEON_OBJECT_TYPE:
            continue
        owner = _int(entry[6], default=-1)
        dungeons.append(DungeonObservation(
            kingdom=kingdom,
            x=_int(entry[1]),
            y=_int(entry[2]),
            attack_cooldown=_int(entry[5]),
            player_id=owner if owner > 0 else None,
        ))
    return dungeons


def castles_from_json(value: Any) -> List[Castle]:
    """Rebuild castles persisted as ``[[x, y, type], ...]``."""
    if not value:
        return []
    return [Castle(_int(c[0]), _int(c[1]), _int(c[2])) for c in value]
