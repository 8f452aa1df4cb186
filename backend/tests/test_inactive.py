"""Tests for the refresh of players missing from every ranking."""

import asyncio
from datetime import datetime, timezone

from conftest import ScriptedAPI, failure, make_config, no_sleep, ok, player_info
from database.supabase_client import SupabaseClient
from gge_api.models import parse_player_info
from gge_api.retry import RetryingFetcher
from refresh.context import PassContext
from refresh.history import HistoryWriter
from refresh.inactive import InactivePlayerRefresher
from refresh.reconciliation import KnownPlayer
from refresh.snapshot import SnapshotWriter

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)
OLD = "2026-01-01T00:00:00+00:00"


def stored(player_id, name, castles):
    return {
        "id": player_id,
        "name": name,
        "alliance_id": None,
        "castles": castles,
        "castles_realm": [],
        "might_all_time": 0,
        "loot_all_time": 0,
        "max_honor": 0,
        "level": 0,
        "legendary_level": 0,
        "highest_fame": 0,
        "updated_at": OLD,
    }


def build(fake_db, api, **overrides):
    config = make_config(**overrides)
    db = SupabaseClient(config, client_factory=lambda url, key: fake_db, sleep=lambda _s: None)
    snapshot = SnapshotWriter(db, HistoryWriter(db, config), config)
    refresher = InactivePlayerRefresher(
        db, RetryingFetcher(api, sleep=no_sleep), snapshot, config, now=lambda: NOW
    )
    ctx = PassContext(server="FR1")
    ctx.previous = {row["id"]: KnownPlayer.from_row(row) for row in db.get_known_players()}
    ctx.accumulator.observe(parse_player_info(player_info(1, castles=[(0, 0, 1), (1, 0, 4)])), might=10)
    return refresher, ctx


def test_resolved_players_are_merged_and_missing_ones_cleared(fake_db):
    fake_db.seed(
        "players",
        stored(1, "player1", [[0, 0, 1], [1, 0, 4]]),
        stored(10, "Ten", [[1, 1, 1]]),
        stored(11, "Gone", [[2, 2, 1]]),
        stored(12, "Flaky", [[4, 4, 1]]),
    )
    api = ScriptedAPI(players={
        10: ok({"O": player_info(10, name="Ten", might=400, castles=[(3, 3, 1)], P=-2)}),
        11: failure("Timeout"),
        12: [failure("http_status=502")],
    })
    refresher, ctx = build(fake_db, api, inactive_min_population=1)

    looked_up = asyncio.run(refresher.refresh(ctx))

    players = {row["id"]: row for row in fake_db.rows("players")}
    assert looked_up == 4
    assert ("gdi", 1) not in api.calls
    assert players[10]["castles"] == [[3, 3, 1]]
    assert players[10]["loot_current"] == 2 ** 32 - 2
    assert players[10]["might_current"] == 400
    assert players[11]["castles"] == []
    assert players[12]["castles"] == []
    assert ctx.counters.players_cleared == 2
    assert ctx.counters.errors == 1
    assert ctx.counters.critical_errors == 0
    assert fake_db.rows("player_castle_movements_history")[0]["movement_type"] == "move"


def test_player_without_owner_block_is_cleared(fake_db):
    fake_db.seed("players", stored(20, "Empty", [[5, 5, 1]]))
    api = ScriptedAPI(players={20: ok({"gcl": {}})})
    refresher, ctx = build(fake_db, api, inactive_min_population=1)

    asyncio.run(refresher.refresh(ctx))

    assert fake_db.rows("players")[0]["castles"] == []
    assert ctx.counters.errors == 0


def test_small_servers_are_skipped(fake_db):
    fake_db.seed("players", stored(10, "Ten", [[1, 1, 1]]))
    api = ScriptedAPI()
    refresher, ctx = build(fake_db, api)

    assert asyncio.run(refresher.refresh(ctx)) == 0
    assert api.calls == []


def test_unclean_pass_is_skipped(fake_db):
    api = ScriptedAPI()
    refresher, ctx = build(fake_db, api, inactive_min_population=1)
    ctx.counters.critical_errors = 1

    assert not refresher.should_run(ctx)
