"""
Snapshot writes for the players and alliances tables.

Per-player changes (creation, rename, alliance change, castle movement)
go through individual writes, each preceded by its history record. All
current values are then applied at once: the pass's rows are staged in
chunks and merged by one set-based update on the database side.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from postgrest.exceptions import APIError

from config import Config
from database.supabase_client import StorageError, SupabaseClient, is_foreign_key_violation
from refresh.accumulator import PlayerBundle
from refresh.context import PassContext
from refresh.history import HistoryWriter
from refresh.reconciliation import Reconciliation

logger = logging.getLogger(__name__)


def chunked(rows: List, size: int) -> List[List]:
    return [rows[start:start + size] for start in range(0, len(rows), size)]


@dataclass
class SnapshotPlan:
    """Players to create and reconciled players to update."""

    creations: List[PlayerBundle] = field(default_factory=list)
    updates: List[Tuple[PlayerBundle, Reconciliation]] = field(default_factory=list)


class SnapshotWriter:
    """Applies reconciled bundles to the snapshot tables."""

    def __init__(self, db: SupabaseClient, history: HistoryWriter, config: Config):
        self.db = db
        self.history = history
        self.chunk_size = config.staging_chunk_size
        # Alliances known to exist after a create attempt this pass
        self._ensured_alliances: Set[int] = set()

    def ensure_alliance(self, alliance_id: int, name: Optional[str], ctx: PassContext):
        """Create a missing alliance; once an attempt succeeds it is not repeated this pass."""
        if alliance_id in self._ensured_alliances:
            return
        created = self.db.insert_alliance(alliance_id, name)
        self._ensured_alliances.add(alliance_id)
        if created:
            ctx.counters.alliances_created += 1
            logger.debug("Alliance created", extra={"alliance_id": alliance_id})

    def _with_alliance_recovery(self, write, alliance_id: Optional[int], alliance_name: Optional[str], ctx):
        """Run ``write``; on a missing alliance create it and retry exactly once."""
        try:
            return write()
        except APIError as e:
            if alliance_id is None or not is_foreign_key_violation(e):
                raise
            self.ensure_alliance(alliance_id, alliance_name, ctx)
            return write()

    @staticmethod
    def is_creatable(bundle: PlayerBundle) -> bool:
        return bool(bundle.name)

    def create_player(self, bundle: PlayerBundle, ctx: PassContext) -> bool:
        """
        Insert a player seen for the first time.

        Returns:
            True when the player row exists afterwards
        """
        row = bundle.to_staging_row(ctx.pass_id)
        row.pop("pass_id")
        row.update({
            "name": bundle.name,
            "alliance_id": bundle.alliance_id,
            "castles": row["castles"] or [],
            "castles_realm": row["castles_realm"] or [],
            "updated_at": ctx.created_at,
        })
        try:
            self._with_alliance_recovery(
                lambda: self.db.insert_player(row), bundle.alliance_id, bundle.alliance_name, ctx
            )
        except (APIError, StorageError) as e:
            ctx.counters.critical_errors += 1
            logger.error("Player creation failed", extra={
                "player_id": bundle.player_id,
                "alliance_id": bundle.alliance_id,
                "error": str(e)
            }, exc_info=True)
            return False
        ctx.counters.players_created += 1
        return True

    def apply_reconciliation(self, reconciliation: Reconciliation, bundle: PlayerBundle, ctx: PassContext) -> bool:
        """
        Write the history of each transition, then the change itself.

        A transition whose history insert fails is counted as critical and
        its snapshot change is held back.

        Returns:
            False when the castle movements could not be recorded, in which
            case the caller must keep the stored castles
        """
        created_at = ctx.created_at
        player_id = reconciliation.player_id

        if reconciliation.renames:
            try:
                self.history.write_renames(reconciliation.renames, created_at)
                self.db.update_player(player_id, {"name": reconciliation.renames[-1].new_name})
                ctx.counters.players_renamed += 1
            except (APIError, StorageError) as e:
                self._critical(ctx, "Player rename failed", player_id, e)

        transfer = reconciliation.alliance_transfer
        if transfer is not None:
            try:
                self.history.write_alliance_transfer(transfer, created_at)
                self._with_alliance_recovery(
                    lambda: self.db.update_player(player_id, {"alliance_id": transfer.new_alliance_id}),
                    transfer.new_alliance_id,
                    transfer.new_alliance_name,
                    ctx
                )
                ctx.counters.players_alliance_updated += 1
            except (APIError, StorageError) as e:
                self._critical(ctx, "Alliance transfer failed", player_id, e)

        alliance_rename = reconciliation.alliance_rename
        if alliance_rename is not None:
            try:
                self.history.write_alliance_rename(alliance_rename, created_at)
                self.db.update_alliance_name(alliance_rename.alliance_id, alliance_rename.new_name)
                ctx.counters.alliances_updated += 1
            except (APIError, StorageError) as e:
                self._critical(ctx, "Alliance rename failed", player_id, e)

        if reconciliation.movements:
            try:
                self.history.write_movements(reconciliation.movements, created_at)
                ctx.counters.castle_movements += len(reconciliation.movements)
            except (APIError, StorageError) as e:
                self._critical(ctx, "Castle movement history failed", player_id, e)
                return False
        return True

    def _critical(self, ctx: PassContext, message: str, player_id: int, error: Exception):
        ctx.counters.critical_errors += 1
        logger.error(message, extra={"player_id": player_id, "error": str(error)}, exc_info=True)

    def clear_player(self, player_id: int, ctx: PassContext) -> bool:
        try:
            self.db.clear_player(player_id)
        except (APIError, StorageError) as e:
            self._critical(ctx, "Player clear failed", player_id, e)
            return False
        ctx.counters.players_cleared += 1
        return True

    def staging_rows(self, bundles: List[PlayerBundle], ctx: PassContext, frozen_castles: Set[int]) -> List[Dict]:
        rows = []
        for bundle in bundles:
            row = bundle.to_staging_row(ctx.pass_id)
            if bundle.player_id in frozen_castles:
                # Stored castles are kept by the merge when none are staged
                row["castles"] = None
                row["castles_realm"] = None
            rows.append(row)
        return rows

    def bulk_merge(self, rows: List[Dict], pass_id: str) -> Tuple[int, int]:
        """
        Stage ``rows`` in chunks and merge them in one statement.

        Returns:
            Tuple ``(chunks_inserted, players_updated)``

        Raises:
            APIError, StorageError: A chunk insert or the merge failed
        """
        if not rows:
            return 0, 0
        chunks = chunked(rows, self.chunk_size)
        for index, chunk in enumerate(chunks):
            self.db.insert_staging_chunk(chunk)
            logger.debug("Staging chunk inserted", extra={
                "chunk": index + 1,
                "total_chunks": len(chunks),
                "rows": len(chunk)
            })
        updated = self.db.merge_staged_players(pass_id)
        logger.info("Players merged", extra={
            "pass_id": pass_id,
            "staged_rows": len(rows),
            "chunks": len(chunks),
            "players_updated": updated
        })
        return len(chunks), updated

    def plan(self, ctx: PassContext, bundles: Optional[List[PlayerBundle]] = None) -> SnapshotPlan:
        """
        Reconcile ``bundles`` (the whole accumulator by default) against the
        previous snapshot. Pure apart from the pass-wide rename flags.
        """
        bundles = ctx.accumulator.bundles() if bundles is None else bundles
        plan = SnapshotPlan()
        for bundle in bundles:
            previous = ctx.previous.get(bundle.player_id)
            if previous is None:
                if self.is_creatable(bundle):
                    plan.creations.append(bundle)
                continue
            plan.updates.append((bundle, ctx.engine.reconcile(previous, bundle)))
        return plan

    def write(self, ctx: PassContext, plan: SnapshotPlan) -> int:
        """
        Persist a reconciled plan.

        Returns:
            Number of players updated by the merge
        """
        to_merge: List[PlayerBundle] = []
        frozen_castles: Set[int] = set()

        for bundle in plan.creations:
            if self.create_player(bundle, ctx):
                to_merge.append(bundle)

        for bundle, reconciliation in plan.updates:
            if not reconciliation.is_empty:
                if not self.apply_reconciliation(reconciliation, bundle, ctx):
                    frozen_castles.add(bundle.player_id)
            to_merge.append(bundle)

        try:
            _, updated = self.bulk_merge(self.staging_rows(to_merge, ctx, frozen_castles), ctx.pass_id)
        except (APIError, StorageError) as e:
            ctx.counters.critical_errors += 1
            logger.error("Bulk player merge failed", extra={
                "pass_id": ctx.pass_id,
                "rows": len(to_merge),
                "error": str(e)
            }, exc_info=True)
            return 0
        ctx.counters.players_updated += updated
        return updated
