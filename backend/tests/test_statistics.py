"""Tests for the server statistics row."""

import asyncio
import json

from conftest import player_info
from gge_api.models import Castle, parse_player_info
from refresh.accumulator import PlayerBundle
from refresh.context import PassContext, PassCounters
from refresh.statistics import AggregateRefresher, compute_server_statistics

TWO_CASTLES = [Castle(0, 0, 1), Castle(1, 1, 4)]
PEACE_MAX = 60 * 60 * 24 * 63


def bundle(player_id, might=0, loot=0, honor=0, level=0, alliance_id=None, castles=TWO_CASTLES, **values):
    return PlayerBundle(
        player_id=player_id,
        might_current=might,
        loot_current=loot,
        honor=honor,
        level=level,
        alliance_id=alliance_id,
        castles=list(castles),
        **values
    )


def observe(ctx, player_id, might):
    observation = parse_player_info(player_info(player_id, might=might, castles=[(0, 0, 1), (1, 1, 4)]))
    ctx.accumulator.observe(observation, might=might)


def compute(bundles, event_scores=None, previous_row=None, counters=None):
    return compute_server_statistics(
        bundles, event_scores or {}, previous_row, counters or PassCounters(), PEACE_MAX, 30
    )


def test_population_excludes_single_castle_players():
    row = compute([
        bundle(1, might=100, loot=10, honor=4, level=50, alliance_id=1),
        bundle(2, might=300, loot=30, honor=2, level=20, alliance_id=1, legendary_level=10),
        bundle(3, might=10_000, castles=[Castle(0, 0, 1)]),
    ])

    assert row["players_count"] == 2
    assert row["avg_might"] == 200
    assert row["avg_loot"] == 20
    assert row["avg_level"] == 40
    assert row["total_might"] == 400
    assert row["alliance_count"] == 1
    assert row["max_might"] == 300
    assert row["max_might_player_id"] == 2


def test_zero_population_returns_none():
    assert compute([bundle(1, castles=[Castle(0, 0, 1)])]) is None


def test_variation_from_the_previous_row():
    row = compute(
        [bundle(1, might=500, loot=50, honor=5)],
        previous_row={"total_might": 450, "total_loot": 60, "total_honor": 5},
    )
    assert row["variation_might"] == 50
    assert row["variation_loot"] == -10
    assert row["variation_honor"] == 0


def test_players_in_peace_respect_window_and_level():
    row = compute([
        bundle(1, level=40, remaining_peace_time=3600),
        bundle(2, level=10, remaining_peace_time=3600),
        bundle(3, level=40, remaining_peace_time=PEACE_MAX + 1),
        bundle(4, level=40),
    ])
    assert row["players_in_peace"] == 1


def test_counters_are_copied():
    counters = PassCounters(players_alliance_updated=3, players_renamed=2, alliances_updated=1)
    row = compute([bundle(1)], counters=counters)
    assert row["players_who_changed_alliance"] == 3
    assert row["players_who_changed_name"] == 2
    assert row["alliances_changed_name"] == 1


def test_event_top_three_and_participation():
    scores = {
        1: {"samurai": 100, "nomad": 5},
        2: {"samurai": 300},
        3: {"samurai": 200},
        4: {"samurai": 0},
    }
    row = compute([bundle(1), bundle(2), bundle(3), bundle(4)], event_scores=scores)

    assert row["events_count"] == 2
    top = json.loads(row["events_top_3_names"])
    assert top["51"] == [{"id": "2", "point": 300}, {"id": "3", "point": 200}, {"id": "1", "point": 100}]
    participation = json.loads(row["events_participation_rate"])
    assert participation["51"] == [3, 0.75]
    assert row["event_samurai_points"] == 600
    assert row["event_samurai_players"] == 3
    assert row["event_bloodcrow_points"] == 0
    assert "58" not in top


def test_refresher_refuses_to_run_after_critical_errors(db, config, fake_db):
    ctx = PassContext(server="FR1")
    observe(ctx, 1, might=70)
    ctx.counters.critical_errors = 1

    assert asyncio.run(AggregateRefresher(db, config).refresh(ctx)) is None
    assert fake_db.rows("server_statistics") == []


def test_refresher_appends_exactly_one_row(db, config, fake_db):
    fake_db.seed("server_statistics", {"created_at": "2026-01-01T00:00:00+00:00", "total_might": 0})
    ctx = PassContext(server="FR1")
    observe(ctx, 1, might=70)

    row = asyncio.run(AggregateRefresher(db, config).refresh(ctx))

    assert row["variation_might"] == 70
    assert len(fake_db.rows("server_statistics")) == 2
    assert ctx.population == 1


def test_refresher_counts_empty_population_as_non_fatal(db, config, fake_db):
    ctx = PassContext(server="FR1")

    assert asyncio.run(AggregateRefresher(db, config).refresh(ctx)) is None
    assert ctx.counters.errors == 1
    assert ctx.counters.critical_errors == 0
    assert fake_db.rows("server_statistics") == []
