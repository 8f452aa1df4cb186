"""
Ranking categories fetched during a pass.

Each category is one highscore list on the remote (``LT`` code) split into
level brackets (``LID``). The order of ``PASS_CATEGORIES`` is the order the
orchestrator walks them: loot first, events in the middle, might last since
its data feeds the final snapshot and statistics.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple

from gge_api import retry
from gge_api.retry import RetryPolicy


class CategoryKind(Enum):
    LOOT = "loot"
    MIGHT = "might"
    EVENT = "event"


@dataclass(frozen=True)
class Category:
    """One ranking list and how to walk it."""

    key: str
    name: str
    kind: CategoryKind
    list_type: int
    level_categories: Tuple[int, ...]
    history_table: str
    first_page_policy: RetryPolicy
    page_policy: RetryPolicy
    # Requests between pacing pauses; 0 uses the configured default
    pace_every: int = 0
    pace_pause: float = 0.0
    # Events may start at a later bracket; empty leading brackets up to this one are skipped
    skip_empty_brackets_upto: int = 0

    @property
    def is_event(self) -> bool:
        return self.kind is CategoryKind.EVENT

    @property
    def marker(self) -> str:
        """Identifier of the progress marker in the ``parameters`` table."""
        return self.key


def _brackets(count: int) -> Tuple[int, ...]:
    return tuple(range(1, count + 1))


LOOT = Category(
    key="loot",
    name="loot",
    kind=CategoryKind.LOOT,
    list_type=2,
    level_categories=_brackets(1),
    history_table="player_loot_history",
    first_page_policy=retry.LOOT_FIRST_PAGE,
    page_policy=retry.LOOT_PAGE,
)

MIGHT = Category(
    key="might",
    name="might",
    kind=CategoryKind.MIGHT,
    list_type=6,
    level_categories=_brackets(6),
    history_table="player_might_history",
    first_page_policy=retry.MIGHT_FIRST_PAGE,
    page_policy=retry.MIGHT_PAGE,
    pace_every=100,
    pace_pause=0.1,
)


def _event(key: str, name: str, list_type: int, brackets: int, skip_upto: int = 0) -> Category:
    return Category(
        key=key,
        name=name,
        kind=CategoryKind.EVENT,
        list_type=list_type,
        level_categories=_brackets(brackets),
        history_table=f"player_event_{key}_history",
        first_page_policy=retry.EVENT_FIRST_PAGE,
        page_policy=retry.EVENT_PAGE,
        skip_empty_brackets_upto=skip_upto,
    )


WAR_REALMS = _event("war_realms", "war realms", 44, 5, skip_upto=2)
SAMURAI = _event("samurai", "samurai", 51, 5)
BERIMOND_KINGDOM = _event("berimond_kingdom", "berimond kingdom", 30, 4)
BLOODCROW = _event("bloodcrow", "bloodcrows", 58, 5, skip_upto=2)
NOMAD = _event("nomad", "nomad", 46, 5)

EVENT_CATEGORIES = (WAR_REALMS, SAMURAI, BERIMOND_KINGDOM, BLOODCROW, NOMAD)

PASS_CATEGORIES = (LOOT,) + EVENT_CATEGORIES + (MIGHT,)

