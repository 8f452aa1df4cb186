"""
Server statistics appended once per clean pass.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from postgrest.exceptions import APIError

from config import Config
from database.supabase_client import StorageError, SupabaseClient
from refresh.accumulator import PlayerBundle
from refresh.categories import EVENT_CATEGORIES, Category
from refresh.context import PassContext, PassCounters

logger = logging.getLogger(__name__)


def _average(total: int, count: int) -> float:
    return round(total / count, 8)


def _event_top_three(scores: Mapping[int, Mapping[str, int]], key: str) -> List[Dict[str, Any]]:
    entries = [(player_id, events[key]) for player_id, events in scores.items() if key in events]
    entries.sort(key=lambda entry: entry[1], reverse=True)
    return [{"id": str(player_id), "point": point} for player_id, point in entries[:3]]


def compute_server_statistics(
    bundles: Iterable[PlayerBundle],
    event_scores: Mapping[int, Mapping[str, int]],
    previous_row: Optional[Dict[str, Any]],
    counters: PassCounters,
    peace_max_seconds: int,
    peace_min_level: int,
    events: Iterable[Category] = EVENT_CATEGORIES
) -> Optional[Dict[str, Any]]:
    """
    Build the statistics row of a pass.

    The population is restricted to players holding more than one castle.

    Returns:
        The row to insert, or None when the population is empty
    """
    population = [b for b in bundles if b.castle_count > 1]
    count = len(population)
    if count == 0:
        return None

    total_might = sum(b.might_current or 0 for b in population)
    total_loot = sum(b.loot_current or 0 for b in population)
    total_honor = sum(b.honor or 0 for b in population)
    total_level = sum((b.level or 0) + (b.legendary_level or 0) for b in population)

    max_might_holder = max(population, key=lambda b: b.might_current or 0)
    max_loot_holder = max(population, key=lambda b: b.loot_current or 0)

    previous_row = previous_row or {}
    row: Dict[str, Any] = {
        "avg_might": _average(total_might, count),
        "avg_loot": _average(total_loot, count),
        "avg_honor": _average(total_honor, count),
        "avg_level": _average(total_level, count),
        "players_count": count,
        "alliance_count": len({b.alliance_id for b in population if b.alliance_id is not None}),
        "players_in_peace": sum(
            1 for b in population
            if 0 < b.remaining_peace_time < peace_max_seconds and b.level >= peace_min_level
        ),
        "players_who_changed_alliance": counters.players_alliance_updated,
        "players_who_changed_name": counters.players_renamed,
        "alliances_changed_name": counters.alliances_updated,
        "total_might": total_might,
        "total_loot": total_loot,
        "total_honor": total_honor,
        "variation_might": total_might - (previous_row.get("total_might") or 0),
        "variation_loot": total_loot - (previous_row.get("total_loot") or 0),
        "variation_honor": total_honor - (previous_row.get("total_honor") or 0),
        "max_might": max_might_holder.might_current or 0,
        "max_loot": max_loot_holder.loot_current or 0,
        "max_might_player_id": max_might_holder.player_id if max_might_holder.might_current else None,
        "max_loot_player_id": max_loot_holder.player_id if max_loot_holder.loot_current else None,
    }

    top_three: Dict[str, List[Dict[str, Any]]] = {}
    participation: Dict[str, List[float]] = {}
    for category in events:
        scores = [events_of[category.key] for events_of in event_scores.values() if category.key in events_of]
        row[f"event_{category.key}_points"] = sum(scores)
        row[f"event_{category.key}_players"] = sum(1 for score in scores if score)
        if not scores:
            continue
        participants = sum(1 for score in scores if score > 0)
        top_three[str(category.list_type)] = _event_top_three(event_scores, category.key)
        participation[str(category.list_type)] = [participants, participants / count]

    row["events_count"] = len(top_three)
    row["events_top_3_names"] = json.dumps(top_three)
    row["events_participation_rate"] = json.dumps(participation)
    return row


class AggregateRefresher:
    """Loads the previous statistics row and appends the new one."""

    def __init__(self, db: SupabaseClient, config: Config):
        self.db = db
        self.config = config

    def _refresh(self, ctx: PassContext) -> Optional[Dict[str, Any]]:
        previous_row = self.db.get_latest_server_statistics()
        row = compute_server_statistics(
            ctx.accumulator.bundles(),
            ctx.accumulator.event_scores(),
            previous_row,
            ctx.counters,
            self.config.peace_max_seconds,
            self.config.peace_min_level
        )
        if row is None:
            return None
        row["created_at"] = datetime.now(timezone.utc).isoformat()
        self.db.insert_server_statistics(row)
        return row

    async def refresh(self, ctx: PassContext) -> Optional[Dict[str, Any]]:
        """
        Append the statistics row of the pass.

        Refuses to run once the pass recorded a critical error; an empty
        population skips the row and counts a non-fatal error.
        """
        if not ctx.is_clean:
            logger.warning("Skipping server statistics after critical errors", extra={
                "critical_errors": ctx.counters.critical_errors
            })
            return None

        loop = asyncio.get_running_loop()
        try:
            row = await loop.run_in_executor(None, self._refresh, ctx)
        except (APIError, StorageError) as e:
            ctx.counters.critical_errors += 1
            logger.error("Server statistics refresh failed", extra={"error": str(e)}, exc_info=True)
            return None

        if row is None:
            ctx.counters.errors += 1
            logger.warning("Skipping server statistics: no player holds more than one castle")
            return None

        ctx.population = row["players_count"]
        logger.info("Server statistics written", extra={
            "players_count": row["players_count"],
            "alliance_count": row["alliance_count"],
            "events_count": row["events_count"]
        })
        return row
