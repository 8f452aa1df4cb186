"""
Paginated walk of one ranking category.

A ranking is read window by window: ``SV`` is the rank the remote centres
its window on, so the walk advances ``SV`` by the window size until the
remote-reported total (``LR``) is reached. Each metric keeps its own
termination rule:

* loot stops early on a page ending with a zero-point row, then scans the
  bottom of the ranking for players whose loot counter wrapped negative;
* might stops on ``LR``;
* events size their window from the first page and stop on ``LR``. An
  empty or failed first page means the event is not running.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List

from config import Config
from gge_api import retry
from gge_api.client import FetchResult, ResultKind
from gge_api.models import PayloadError, RankingRow, parse_ranking_row, unwrap_loot_points
from gge_api.retry import Pacer, RetryingFetcher
from refresh.accumulator import SnapshotAccumulator
from refresh.categories import Category, CategoryKind

logger = logging.getLogger(__name__)

# Ranking size assumed when the remote omits LR
DEFAULT_RANKING_SIZE = 50000


class OutcomeStatus(Enum):
    COMPLETE = "complete"
    NO_ACTIVE_EVENT = "no_active_event"
    FAILED = "failed"


@dataclass
class CategoryOutcome:
    """What one category fetch produced."""

    category: Category
    status: OutcomeStatus = OutcomeStatus.COMPLETE
    rows: Dict[int, RankingRow] = field(default_factory=dict)
    errors: int = 0
    critical_errors: int = 0
    requests: int = 0

    @property
    def is_clean(self) -> bool:
        return self.status is not OutcomeStatus.FAILED and self.critical_errors == 0

    def record(self, row: RankingRow):
        # Last page wins when a player shows up in several windows
        self.rows[row.player.player_id] = row

    def apply_to(self, accumulator: SnapshotAccumulator):
        """Feed the fetched rows into the pass accumulator."""
        kind = self.category.kind
        for row in self.rows.values():
            if kind is CategoryKind.LOOT:
                accumulator.observe(row.player, loot=row.points)
            elif kind is CategoryKind.MIGHT:
                if row.player.might > 0:
                    accumulator.observe(row.player, might=row.player.might)
            else:
                accumulator.observe_event_score(row.player.player_id, self.category.key, row.points)


class CategoryFetcher:
    """Walks every level bracket of a category through the retry controller."""

    def __init__(self, fetcher: RetryingFetcher, config: Config):
        self.fetcher = fetcher
        self.config = config

    @property
    def metric_step(self) -> int:
        """Window size of the loot and might rankings."""
        return 6 if self.config.is_e4k_server else 10

    def _pacer(self, category: Category) -> Pacer:
        return Pacer(
            every=category.pace_every or self.config.pace_every_requests,
            pause=category.pace_pause or self.config.pace_pause_seconds,
            sleep=self.fetcher.sleep
        )

    async def fetch(self, category: Category) -> CategoryOutcome:
        """
        Fetch every bracket of ``category``.

        Never raises for remote problems: failures are reported through the
        outcome's status and error counters.
        """
        outcome = CategoryOutcome(category=category)
        pacer = self._pacer(category)

        logger.info("Fetching category", extra={
            "category": category.key,
            "list_type": category.list_type,
            "brackets": len(category.level_categories)
        })

        for level_category in category.level_categories:
            if category.is_event:
                keep_going = await self._walk_event_bracket(category, level_category, outcome, pacer)
            else:
                keep_going = await self._walk_metric_bracket(category, level_category, outcome, pacer)
            if not keep_going:
                break

        outcome.requests = pacer.count
        logger.info("Category fetched", extra={
            "category": category.key,
            "status": outcome.status.value,
            "players": len(outcome.rows),
            "requests": outcome.requests,
            "errors": outcome.errors,
            "critical_errors": outcome.critical_errors
        })
        return outcome

    def _fail(self, outcome: CategoryOutcome, level_category: int, search_value: int, result: FetchResult):
        outcome.status = OutcomeStatus.FAILED
        outcome.critical_errors += 1
        logger.error("Ranking pagination stopped before the end of the category", extra={
            "category": outcome.category.key,
            "level_category": level_category,
            "search_value": search_value,
            "players_found": len(outcome.rows),
            "reason": result.reason or result.kind.value
        })

    def _parse_page(self, outcome: CategoryOutcome, page: FetchResult) -> List[RankingRow]:
        rows = []
        for raw in page.rows:
            try:
                rows.append(parse_ranking_row(raw))
            except PayloadError as e:
                outcome.critical_errors += 1
                logger.error("Malformed ranking row", extra={
                    "category": outcome.category.key,
                    "error": str(e)
                })
        return rows

    async def _walk_metric_bracket(
        self,
        category: Category,
        level_category: int,
        outcome: CategoryOutcome,
        pacer: Pacer
    ) -> bool:
        step = self.metric_step
        search_value = step // 2
        page = await self.fetcher.highscores(
            category.list_type, level_category, search_value, category.first_page_policy, pacer
        )
        if page.kind is ResultKind.EMPTY:
            logger.info("Empty ranking bracket", extra={
                "category": category.key,
                "level_category": level_category
            })
            return True
        if not page.ok:
            self._fail(outcome, level_category, search_value, page)
            return False

        total = page.total if page.total is not None else DEFAULT_RANKING_SIZE
        seen = 0
        while True:
            if page is None:
                page = await self.fetcher.highscores(
                    category.list_type, level_category, search_value, category.page_policy, pacer
                )
                if not page.ok:
                    self._fail(outcome, level_category, search_value, page)
                    return False

            rows = self._parse_page(outcome, page)
            for row in rows:
                if category.kind is CategoryKind.LOOT:
                    row = replace(row, points=unwrap_loot_points(row.points))
                outcome.record(row)
            seen += len(page.rows)
            search_value += step

            if category.kind is CategoryKind.LOOT and (not rows or rows[-1].points == 0):
                logger.info("Loot ranking reached players without loot", extra={
                    "level_category": level_category,
                    "players_found": seen
                })
                break
            if seen >= total or total in {row.rank for row in rows}:
                break
            page = None

        if category.kind is CategoryKind.LOOT:
            await self._scan_negative_loot(category, level_category, step, outcome, pacer)
        return True

    async def _scan_negative_loot(
        self,
        category: Category,
        level_category: int,
        step: int,
        outcome: CategoryOutcome,
        pacer: Pacer
    ):
        """
        Collect players whose loot counter wrapped below zero.

        Those players rank at the very bottom, so the scan starts at the
        last rank and walks upwards until it meets a non-negative row.
        """
        first = await self.fetcher.highscores(
            category.list_type, level_category, 1, retry.LOOT_FIRST_PAGE, pacer
        )
        total = first.total if first.ok else None
        if not total:
            outcome.errors += 1
            logger.warning("Could not size the loot ranking for the negative scan", extra={
                "level_category": level_category,
                "reason": first.reason or first.kind.value
            })
            return

        search_value = total
        found = 0
        while search_value > 0:
            page = await self.fetcher.highscores(
                category.list_type, level_category, search_value, retry.NEGATIVE_LOOT_PAGE, pacer
            )
            if not page.ok:
                logger.warning("Negative loot scan stopped", extra={
                    "level_category": level_category,
                    "search_value": search_value,
                    "reason": page.reason or page.kind.value
                })
                break
            reached_positive = False
            for row in self._parse_page(outcome, page):
                if row.points < 0:
                    outcome.record(replace(row, points=unwrap_loot_points(row.points)))
                    found += 1
                else:
                    reached_positive = True
            if reached_positive:
                break
            search_value -= step

        logger.info("Negative loot scan finished", extra={
            "level_category": level_category,
            "players_found": found
        })

    async def _walk_event_bracket(
        self,
        category: Category,
        level_category: int,
        outcome: CategoryOutcome,
        pacer: Pacer
    ) -> bool:
        first = await self.fetcher.highscores(
            category.list_type, level_category, 1, category.first_page_policy, pacer
        )
        total = first.total if first.ok else None
        if not total:
            if level_category <= category.skip_empty_brackets_upto:
                return True
            if not outcome.rows:
                outcome.status = OutcomeStatus.NO_ACTIVE_EVENT
                logger.info("No active event", extra={
                    "category": category.key,
                    "level_category": level_category,
                    "reason": first.reason or first.kind.value
                })
            return False

        step = len(first.rows)
        search_value = math.ceil(step / 2)
        seen = 0
        while True:
            page = await self.fetcher.highscores(
                category.list_type, level_category, search_value, category.page_policy, pacer
            )
            if not page.ok:
                self._fail(outcome, level_category, search_value, page)
                return False
            rows = self._parse_page(outcome, page)
            for row in rows:
                outcome.record(row)
            seen += len(page.rows)
            search_value += step
            if seen >= total or total in {row.rank for row in rows}:
                return True
