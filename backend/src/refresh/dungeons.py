"""
Dungeon map refresh.

The map is read through ``gaa`` in 13x13 squares (a 12-cell window per
request, walked in serpentine order). A full scan records every dungeon of
a kingdom; the periodic update only re-reads the squares holding dungeons
whose attack cooldown has elapsed, and appends an ownership record when the
attacking player changed.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from postgrest.exceptions import APIError

from config import Config
from database.supabase_client import StorageError, SupabaseClient
from gge_api import retry
from gge_api.models import DungeonObservation, parse_dungeons
from gge_api.retry import Pacer, RetryingFetcher

logger = logging.getLogger(__name__)

SQUARE_STEP = 12
SQUARE_SPACING = SQUARE_STEP + 1
# A dungeon's cooldown restarts at one day when it is attacked
ATTACK_COOLDOWN_SECONDS = 24 * 60 * 60

DUNGEON_STATE_TABLE = "dungeon_player_state"

Square = Tuple[int, int, int, int]


def corresponding_square(x: int, y: int, map_size: int) -> Optional[Square]:
    """Scan square ``(AX1, AY1, AX2, AY2)`` containing a map position."""
    ax1 = (x // SQUARE_SPACING) * SQUARE_SPACING
    ay1 = (y // SQUARE_SPACING) * SQUARE_SPACING
    ax2 = ax1 + SQUARE_STEP
    ay2 = ay1 + SQUARE_STEP
    if ax1 >= 0 and ay1 >= 0 and ax2 <= map_size and ay2 <= map_size:
        return ax1, ay1, ax2, ay2
    return None


def iter_squares(map_size: int) -> Iterator[Square]:
    """Every scan square of the map, row by row in serpentine order."""
    steps = -(-map_size // SQUARE_SPACING)
    for y_index in range(steps):
        x_indexes = range(steps) if y_index % 2 == 0 else reversed(range(steps))
        y = y_index * SQUARE_SPACING
        for x_index in x_indexes:
            x = x_index * SQUARE_SPACING
            yield x, y, x + SQUARE_STEP, y + SQUARE_STEP


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_due(row: Dict, now: datetime) -> bool:
    """A dungeon is due once its attack cooldown has run out."""
    cooldown = int(row.get("attack_cooldown") or 0)
    if cooldown == 0:
        return True
    updated_at = _parse_timestamp(row.get("updated_at"))
    return updated_at is None or updated_at + timedelta(seconds=cooldown) <= now


class DungeonRefresher:
    """Scans and updates dungeons of the configured kingdoms."""

    def __init__(self, db: SupabaseClient, fetcher: RetryingFetcher, config: Config, now=None):
        self.db = db
        self.fetcher = fetcher
        self.config = config
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.errors = 0

    def _pacer(self) -> Pacer:
        return Pacer(self.config.pace_every_requests, self.config.pace_pause_seconds, sleep=self.fetcher.sleep)

    async def _read_square(self, kingdom: int, square: Square, pacer: Pacer) -> List[DungeonObservation]:
        ax1, ay1, ax2, ay2 = square
        result = await self.fetcher.fetch_listing(
            lambda: self.fetcher.client.get_map_area(kingdom, ax1, ay1, ax2, ay2),
            retry.MAP_AREA,
            pacer=pacer,
            description=f"gaa KID={kingdom} AX1={ax1} AY1={ay1}"
        )
        if not result.ok:
            if result.reason:
                self.errors += 1
                logger.warning("Map area request failed", extra={
                    "kingdom": kingdom,
                    "square": list(square),
                    "reason": result.reason
                })
            return []
        return parse_dungeons(result.content, kingdom)

    async def scan(self, kingdom: int) -> int:
        """
        Record every dungeon of a kingdom.

        Returns:
            Number of dungeons found
        """
        pacer = self._pacer()
        found: List[DungeonObservation] = []
        for square in iter_squares(self.config.map_size):
            found.extend(await self._read_square(kingdom, square, pacer))

        updated_at = self._now().isoformat()
        try:
            self.db.upsert_dungeons([{
                "kid": d.kingdom,
                "position_x": d.x,
                "position_y": d.y,
                "attack_cooldown": d.attack_cooldown,
                "player_id": d.player_id,
                "updated_at": updated_at,
            } for d in found])
        except (APIError, StorageError) as e:
            self.errors += 1
            logger.error("Dungeon scan write failed", extra={"kingdom": kingdom, "error": str(e)}, exc_info=True)
            return 0

        logger.info("Dungeon scan finished", extra={
            "kingdom": kingdom,
            "requests": pacer.count,
            "dungeons": len(found),
            "errors": self.errors
        })
        return len(found)

    async def update_due(self, kingdom: int) -> int:
        """
        Re-read the squares of dungeons whose cooldown elapsed.

        Returns:
            Number of dungeons updated
        """
        now = self._now()
        try:
            stored_rows = self.db.get_dungeons(kingdom)
        except (APIError, StorageError) as e:
            self.errors += 1
            logger.error("Stored dungeons unavailable", extra={"kingdom": kingdom, "error": str(e)}, exc_info=True)
            return 0
        known = {(row["position_x"], row["position_y"]): row for row in stored_rows}
        squares = []
        for (x, y), row in known.items():
            if not is_due(row, now):
                continue
            square = corresponding_square(x, y, self.config.map_size)
            if square and square not in squares:
                squares.append(square)

        pacer = self._pacer()
        updates: List[Dict] = []
        states: List[Dict] = []
        for square in squares:
            for dungeon in await self._read_square(kingdom, square, pacer):
                stored = known.get((dungeon.x, dungeon.y))
                if stored is None:
                    continue
                if stored.get("player_id") != dungeon.player_id:
                    last_attack_at = now - timedelta(seconds=ATTACK_COOLDOWN_SECONDS - dungeon.attack_cooldown)
                    states.append({
                        "kid": kingdom,
                        "position_x": dungeon.x,
                        "position_y": dungeon.y,
                        "player_id": dungeon.player_id,
                        "last_attack_at": last_attack_at.isoformat(),
                    })
                updates.append({
                    "kid": kingdom,
                    "position_x": dungeon.x,
                    "position_y": dungeon.y,
                    "attack_cooldown": dungeon.attack_cooldown,
                    "player_id": dungeon.player_id,
                    "updated_at": now.isoformat(),
                })

        # Ownership history first, then the current state it explains
        try:
            self.db.insert_rows(DUNGEON_STATE_TABLE, states)
            self.db.upsert_dungeons(updates)
        except (APIError, StorageError) as e:
            self.errors += 1
            logger.error("Dungeon update failed", extra={"kingdom": kingdom, "error": str(e)}, exc_info=True)
            return 0

        logger.info("Dungeons updated", extra={
            "kingdom": kingdom,
            "squares": len(squares),
            "dungeons": len(updates),
            "ownership_changes": len(states)
        })
        return len(updates)
