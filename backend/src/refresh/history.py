"""
Append-only history writes.

Metric points (loot, might, event scores) are batched per category and may
run in an executor while later categories are still fetching. Transition
rows (renames, alliance transfers, castle movements) are written one entity
at a time, before the snapshot mutation they describe, and raise on failure
so the caller can hold back that mutation.
"""

import asyncio
import logging
from typing import Any, Dict, List

from postgrest.exceptions import APIError

from config import Config
from database.supabase_client import StorageError, SupabaseClient
from refresh.categories import CategoryKind
from refresh.context import PassContext
from refresh.fetcher import CategoryOutcome
from refresh.reconciliation import AllianceRename, AllianceTransfer, CastleMovement, Rename

logger = logging.getLogger(__name__)

MOVEMENTS_TABLE = "player_castle_movements_history"
RENAMES_TABLE = "player_name_update_history"
ALLIANCE_RENAMES_TABLE = "alliance_update_history"
ALLIANCE_TRANSFERS_TABLE = "player_alliance_update"
EVENT_DATES_TABLE = "event_dates"


def metric_rows(outcome: CategoryOutcome, created_at: str) -> List[Dict[str, Any]]:
    """
    History points for one fetched category.

    Loot and might points are kept for players holding castles with
    positive might; event points for every participant.
    """
    rows = []
    kind = outcome.category.kind
    for row in outcome.rows.values():
        player = row.player
        if kind is CategoryKind.EVENT:
            point = row.points
        else:
            if not player.castles or player.might <= 0:
                continue
            point = row.points if kind is CategoryKind.LOOT else player.might
        rows.append({"player_id": player.player_id, "point": point, "created_at": created_at})
    return rows


class HistoryWriter:
    """Writes metric history and transition records."""

    def __init__(self, db: SupabaseClient, config: Config):
        self.db = db
        self.batch_size = config.history_batch_size

    def write_metric_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        """
        Insert rows in batches.

        Returns:
            Number of batches that failed
        """
        failed = 0
        for start in range(0, len(rows), self.batch_size):
            batch = rows[start:start + self.batch_size]
            try:
                self.db.insert_rows(table, batch)
            except (APIError, StorageError) as e:
                failed += 1
                logger.error("History batch insert failed", extra={
                    "table": table,
                    "batch_start": start,
                    "batch_size": len(batch),
                    "error": str(e)
                }, exc_info=True)
        return failed

    def _write_category(self, outcome: CategoryOutcome, created_at: str) -> int:
        category = outcome.category
        rows = metric_rows(outcome, created_at)
        failed = self.write_metric_rows(category.history_table, rows)
        if category.is_event and rows and failed == 0 and outcome.is_clean:
            failed += self.write_metric_rows(EVENT_DATES_TABLE, [{
                "table_name": category.history_table,
                "created_at": created_at
            }])
        logger.info("Category history written", extra={
            "category": category.key,
            "table": category.history_table,
            "rows": len(rows),
            "failed_batches": failed
        })
        return failed

    async def write_category(self, outcome: CategoryOutcome, ctx: PassContext) -> int:
        """Write a finished category's history in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._write_category, outcome, ctx.created_at)

    # Transition records: raise so the caller can hold back the snapshot change

    def write_renames(self, renames: List[Rename], created_at: str):
        self.db.insert_rows(RENAMES_TABLE, [r.to_row(created_at) for r in renames])

    def write_alliance_transfer(self, transfer: AllianceTransfer, created_at: str):
        self.db.insert_rows(ALLIANCE_TRANSFERS_TABLE, [transfer.to_row(created_at)])

    def write_alliance_rename(self, rename: AllianceRename, created_at: str):
        self.db.insert_rows(ALLIANCE_RENAMES_TABLE, [rename.to_row(created_at)])

    def write_movements(self, movements: List[CastleMovement], created_at: str):
        self.db.insert_rows(MOVEMENTS_TABLE, [m.to_row(created_at) for m in movements])
