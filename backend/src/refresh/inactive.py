"""
Reconciliation of players no ranking reported recently.

Players still holding castles whose row was not refreshed for a while are
looked up one by one. A player the remote still resolves goes through the
same reconcile-and-merge path as ranking data; one it no longer resolves is
cleared (castles emptied, alliance removed).
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from postgrest.exceptions import APIError

from config import Config
from database.supabase_client import StorageError, SupabaseClient
from gge_api import retry
from gge_api.client import EntityFetchError, ResultKind
from gge_api.models import PayloadError, PlayerObservation, parse_player_details, unwrap_loot_points
from gge_api.retry import Pacer, RetryingFetcher
from refresh.accumulator import PlayerBundle
from refresh.context import PassContext
from refresh.snapshot import SnapshotWriter

logger = logging.getLogger(__name__)

# Reason reported by the remote for players that no longer exist
TIMEOUT_REASON = "Timeout"


class InactivePlayerRefresher:
    """Refreshes or clears players missing from every ranking."""

    def __init__(
        self,
        db: SupabaseClient,
        fetcher: RetryingFetcher,
        snapshot: SnapshotWriter,
        config: Config,
        now=None
    ):
        self.db = db
        self.fetcher = fetcher
        self.snapshot = snapshot
        self.config = config
        self._now = now or (lambda: datetime.now(timezone.utc))

    def should_run(self, ctx: PassContext) -> bool:
        population = sum(1 for bundle in ctx.accumulator if bundle.castle_count > 1)
        if not ctx.is_clean:
            logger.info("Skipping inactive players after critical errors")
            return False
        if population < self.config.inactive_min_population:
            logger.info("Skipping inactive players on a small server", extra={"population": population})
            return False
        return True

    async def _lookup(self, player_id: int, pacer: Pacer) -> Optional[PlayerObservation]:
        """
        Resolve one player.

        Returns:
            The observation, or None when the remote no longer knows the player

        Raises:
            EntityFetchError: When the lookup exhausted its retries
        """
        result = await self.fetcher.fetch_required(
            lambda: self.fetcher.client.get_player_details(player_id),
            retry.PLAYER_DETAILS,
            pacer=pacer,
            description=f"gdi PID={player_id}"
        )
        if result.kind is ResultKind.FAILURE and result.reason == TIMEOUT_REASON:
            return None
        return parse_player_details(result.content)

    async def refresh(self, ctx: PassContext) -> int:
        """
        Refresh stale players.

        Returns:
            Number of players looked up
        """
        if not self.should_run(ctx):
            return 0

        loop = asyncio.get_running_loop()
        cutoff = (self._now() - timedelta(hours=self.config.inactive_after_hours)).isoformat()
        try:
            player_ids = await loop.run_in_executor(None, self.db.get_stale_player_ids, cutoff)
        except (APIError, StorageError) as e:
            ctx.counters.critical_errors += 1
            logger.error("Could not load inactive players", extra={"error": str(e)}, exc_info=True)
            return 0

        logger.info("Refreshing inactive players", extra={"players": len(player_ids), "cutoff": cutoff})

        pacer = Pacer(self.config.pace_every_requests, self.config.pace_pause_seconds, sleep=self.fetcher.sleep)
        resolved: List[PlayerBundle] = []
        cleared = 0
        for player_id in player_ids:
            if player_id in ctx.accumulator:
                continue
            try:
                observation = await self._lookup(player_id, pacer)
            except EntityFetchError as e:
                ctx.counters.errors += 1
                logger.warning("Inactive player lookup failed, clearing", extra={
                    "player_id": player_id,
                    "reason": e.reason
                })
                observation = None
            except PayloadError as e:
                ctx.counters.errors += 1
                logger.warning("Inactive player payload unreadable, clearing", extra={
                    "player_id": player_id,
                    "error": str(e)
                })
                observation = None

            if observation is None:
                if await loop.run_in_executor(None, self.snapshot.clear_player, player_id, ctx):
                    cleared += 1
                continue

            might = observation.might if observation.might > 0 else None
            loot = unwrap_loot_points(observation.loot) if observation.loot is not None else None
            resolved.append(ctx.accumulator.observe(observation, loot=loot, might=might))

        if resolved:
            plan = self.snapshot.plan(ctx, resolved)
            await loop.run_in_executor(None, self.snapshot.write, ctx, plan)

        logger.info("Inactive players refreshed", extra={
            "players": len(player_ids),
            "resolved": len(resolved),
            "cleared": cleared
        })
        return len(player_ids)
