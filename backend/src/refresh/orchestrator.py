"""
Pass Orchestrator - Coordinates one fill pass for one server.

Manages the pass state machine: clear the previous pass's markers, fetch
every category in order, reconcile and write the snapshot, append the
statistics row, then always finish (markers, version bump, end-of-pass log,
storage closed). Per-category and per-entity failures are counted, never
allowed to abort the pass.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError

from config import Config
from database.supabase_client import StorageError, SupabaseClient
from gge_api.client import GGEAPIClient
from gge_api.retry import RetryingFetcher
from refresh.categories import PASS_CATEGORIES, Category
from refresh.context import PassContext, PassCounters
from refresh.fetcher import CategoryFetcher, CategoryOutcome
from refresh.history import HistoryWriter
from refresh.inactive import InactivePlayerRefresher
from refresh.reconciliation import KnownPlayer
from refresh.snapshot import SnapshotWriter
from refresh.statistics import AggregateRefresher
from utils.loki import LokiPusher

logger = logging.getLogger(__name__)


class PassState(Enum):
    """Pass state enumeration."""
    IDLE = "idle"
    CLEARING_PRIOR_FLAGS = "clearing_prior_flags"
    FETCHING_CATEGORY = "fetching_category"
    RECONCILING = "reconciling"
    WRITING_SNAPSHOT = "writing_snapshot"
    WRITING_AGGREGATES = "writing_aggregates"
    DONE = "done"


@dataclass
class PassResult:
    """Summary returned by ``PassOrchestrator.run``."""

    pass_id: str
    server: str
    duration_ms: int
    counters: PassCounters
    categories: Dict[str, str] = field(default_factory=dict)
    fill_version: Optional[int] = None
    statistics_written: bool = False

    @property
    def critical_errors(self) -> int:
        return self.counters.critical_errors


class PassOrchestrator:
    """Runs fill passes; one at a time per instance."""

    def __init__(
        self,
        config: Config,
        api_client: Optional[GGEAPIClient] = None,
        db_client: Optional[SupabaseClient] = None,
        categories: Sequence[Category] = PASS_CATEGORIES,
        loki: Optional[LokiPusher] = None,
        sleep: Callable = asyncio.sleep
    ):
        self.config = config
        self.api_client = api_client
        self.db_client = db_client
        self.categories = list(categories)
        self.loki = loki or LokiPusher(config.loki_url, config.server_name)
        self._sleep = sleep
        self.state = PassState.IDLE
        self.running = False
        self.state_history: List[PassState] = []

    def _set_state(self, state: PassState, **fields):
        self.state = state
        self.state_history.append(state)
        logger.debug("Pass state changed", extra={"state": state.value, **fields})

    async def _storage(self, ctx: PassContext, description: str, fn, *args) -> Any:
        """Run a storage call in the executor; failures are counted as critical."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except (APIError, StorageError) as e:
            ctx.counters.critical_errors += 1
            logger.error("Storage call failed", extra={
                "operation": description,
                "error": str(e),
                "error_type": type(e).__name__
            }, exc_info=True)
            return None

    async def run(self) -> PassResult:
        """
        Run one complete pass.

        Raises:
            RuntimeError: When a pass is already running on this instance
        """
        if self.running:
            raise RuntimeError("A fill pass is already running")
        self.running = True
        self.state_history = []
        try:
            if self.api_client is None:
                self.api_client = GGEAPIClient(self.config)
            if self.db_client is None:
                self.db_client = SupabaseClient(self.config)

            ctx = PassContext(server=self.config.server_name)
            result = PassResult(
                pass_id=ctx.pass_id,
                server=ctx.server,
                duration_ms=0,
                counters=ctx.counters
            )
            started = time.monotonic()

            logger.info("Fill pass started", extra={"server": ctx.server, "pass_id": ctx.pass_id})
            await self.loki.push("info", "Fill pass started", pass_id=ctx.pass_id)

            try:
                await self._run_pass(ctx, result)
            except Exception as e:
                ctx.counters.critical_errors += 1
                logger.error("Unexpected error during fill pass", extra={
                    "state": self.state.value,
                    "error": str(e),
                    "error_type": type(e).__name__
                }, exc_info=True)
            finally:
                await self._collect_history(ctx)
                result.duration_ms = int((time.monotonic() - started) * 1000)
                await self._finish(ctx, result)
            return result
        finally:
            self.running = False

    async def _run_pass(self, ctx: PassContext, result: PassResult):
        db = self.db_client
        fetcher = RetryingFetcher(
            self.api_client,
            delay_scale=self.config.retry_delay_scale,
            max_delay=self.config.max_retry_delay,
            sleep=self._sleep
        )
        category_fetcher = CategoryFetcher(fetcher, self.config)
        history = HistoryWriter(db, self.config)
        snapshot = SnapshotWriter(db, history, self.config)
        aggregates = AggregateRefresher(db, self.config)
        inactive = InactivePlayerRefresher(db, fetcher, snapshot, self.config)

        self._set_state(PassState.CLEARING_PRIOR_FLAGS)
        await self._storage(ctx, "clear_parameters", db.clear_parameters)
        rows = await self._storage(ctx, "get_known_players", db.get_known_players)
        if rows is None:
            logger.error("Previous snapshot unavailable, snapshot writes will be skipped")
        else:
            self._load_previous(ctx, rows)
        await self._storage(ctx, "update_parameter", db.update_parameter, "is_currently_updating", 1)

        for index, category in enumerate(self.categories):
            self._set_state(PassState.FETCHING_CATEGORY, category=category.key)
            outcome = await self._fetch_category(ctx, category_fetcher, category)
            if outcome is not None:
                result.categories[category.key] = outcome.status.value
                if outcome.is_clean and outcome.rows:
                    ctx.history_tasks.append(asyncio.create_task(history.write_category(outcome, ctx)))
            # Marker advances whatever the outcome so the next pass does not refetch blindly
            await self._storage(ctx, "update_parameter", db.update_parameter, category.marker, 1)
            if index < len(self.categories) - 1:
                await self._sleep(self.config.step_pause_seconds)

        if ctx.is_clean:
            self._set_state(PassState.RECONCILING)
            plan = snapshot.plan(ctx)
            self._set_state(PassState.WRITING_SNAPSHOT)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, snapshot.write, ctx, plan)
        else:
            logger.warning("Skipping snapshot writes after critical errors", extra={
                "critical_errors": ctx.counters.critical_errors
            })

        self._set_state(PassState.WRITING_AGGREGATES)
        statistics, _ = await asyncio.gather(
            aggregates.refresh(ctx), self._collect_history(ctx), return_exceptions=True
        )
        if isinstance(statistics, Exception):
            ctx.counters.critical_errors += 1
            logger.error("Server statistics task failed", extra={"error": str(statistics)})
        else:
            result.statistics_written = statistics is not None

        await inactive.refresh(ctx)

    def _load_previous(self, ctx: PassContext, rows: List[Dict[str, Any]]):
        """Index the stored snapshot; unreadable rows are skipped."""
        for row in rows:
            try:
                known = KnownPlayer.from_row(row)
            except (KeyError, IndexError, TypeError, ValueError) as e:
                ctx.counters.errors += 1
                logger.warning("Skipping unreadable stored player", extra={
                    "player_id": row.get("id"),
                    "error": str(e)
                })
                continue
            ctx.previous[known.player_id] = known

    async def _collect_history(self, ctx: PassContext):
        """Await every metric history write started so far."""
        tasks, ctx.history_tasks = ctx.history_tasks, []
        if not tasks:
            return
        for task_result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(task_result, Exception):
                ctx.counters.critical_errors += 1
                logger.error("History task failed", extra={"error": str(task_result)})
            else:
                ctx.counters.errors += task_result

    async def _fetch_category(
        self,
        ctx: PassContext,
        category_fetcher: CategoryFetcher,
        category: Category
    ) -> Optional[CategoryOutcome]:
        try:
            outcome = await category_fetcher.fetch(category)
        except Exception as e:
            ctx.counters.critical_errors += 1
            logger.error("Category fetch failed", extra={
                "category": category.key,
                "error": str(e),
                "error_type": type(e).__name__
            }, exc_info=True)
            return None
        ctx.counters.errors += outcome.errors
        ctx.counters.critical_errors += outcome.critical_errors
        outcome.apply_to(ctx.accumulator)
        return outcome

    async def _finish(self, ctx: PassContext, result: PassResult):
        """Terminal step; runs whatever happened before."""
        self._set_state(PassState.DONE)
        db = self.db_client
        try:
            if ctx.is_clean:
                result.fill_version = await self._storage(
                    ctx, "increment_fill_version", db.increment_fill_version, ctx.server
                )
            await self._storage(ctx, "update_parameter", db.update_parameter, "is_currently_updating", 0)
            await self._storage(ctx, "update_parameter", db.update_parameter, "duration", result.duration_ms // 1000)
            await self._storage(
                ctx, "update_parameter", db.update_parameter, "critical_errors", ctx.counters.critical_errors
            )

            fields = {
                "server": ctx.server,
                "pass_id": ctx.pass_id,
                "duration_ms": result.duration_ms,
                "fill_version": result.fill_version,
                **ctx.counters.as_log_fields()
            }
            if ctx.is_clean:
                logger.info("Fill pass finished", extra=fields)
            else:
                logger.error("Fill pass finished with critical errors", extra=fields)
            await self.loki.push("info" if ctx.is_clean else "error", "Fill pass finished", **fields)
        finally:
            db.close()
            await self.api_client.close()
            self.db_client = None
            self.api_client = None
            self.state = PassState.IDLE
