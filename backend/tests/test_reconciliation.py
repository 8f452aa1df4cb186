"""Tests for castle movements and the per-player reconciliation."""

from gge_api.models import Castle
from refresh.accumulator import PlayerBundle
from refresh.reconciliation import (
    ADD,
    MOVE,
    REMOVE,
    KnownPlayer,
    ReconciliationEngine,
    get_castle_movements,
    reconcile,
)


def bundle(player_id=1, name="A", alliance_id=1, alliance_name="Guild", castles=None):
    return PlayerBundle(
        player_id=player_id,
        name=name,
        alliance_id=alliance_id,
        alliance_name=alliance_name,
        castles=castles,
    )


def test_movements_are_set_differences():
    previous = [Castle(0, 0, 1), Castle(10, 10, 4), Castle(20, 20, 4)]
    fresh = [Castle(0, 0, 1), Castle(20, 20, 4), Castle(30, 30, 12)]

    movements = get_castle_movements(1, previous, fresh)

    assert [(m.movement_type, m.castle_type, m.old_position, m.new_position) for m in movements] == [
        (REMOVE, 4, (10, 10), None),
        (ADD, 12, None, (30, 30)),
    ]


def test_no_movements_when_castles_are_equal():
    castles = [Castle(0, 0, 1), Castle(5, 6, 4)]
    assert get_castle_movements(1, castles, list(reversed(castles))) == []


def test_type_is_part_of_the_castle_key():
    movements = get_castle_movements(1, [Castle(5, 5, 4)], [Castle(5, 5, 12)])
    assert {m.movement_type for m in movements} == {ADD, REMOVE}


def test_primary_relocation_is_a_single_move():
    previous = [Castle(0, 0, 1), Castle(10, 10, 4)]
    fresh = [Castle(5, 5, 1), Castle(10, 10, 4), Castle(40, 40, 4)]

    movements = get_castle_movements(1, previous, fresh)

    moves = [m for m in movements if m.movement_type == MOVE]
    assert len(moves) == 1
    assert moves[0].old_position == (0, 0)
    assert moves[0].new_position == (5, 5)
    assert all(m.castle_type != 1 for m in movements if m.movement_type != MOVE)
    assert [m.new_position for m in movements if m.movement_type == ADD] == [(40, 40)]


def test_rename_transfer_and_move_scenario():
    previous = KnownPlayer(player_id=1, name="A", alliance_id=1, castles=(Castle(0, 0, 1),))
    fresh = bundle(name="B", alliance_id=2, castles=[Castle(5, 5, 1)])

    result = reconcile(previous, fresh)

    assert [(r.old_name, r.new_name) for r in result.renames] == [("A", "B")]
    assert (result.alliance_transfer.old_alliance_id, result.alliance_transfer.new_alliance_id) == (1, 2)
    assert len(result.movements) == 1
    assert result.movements[0].movement_type == MOVE
    assert result.movements[0].to_row("t")["position_x_new"] == 5
    assert result.alliance_rename is None


def test_first_observation_is_a_pure_create():
    result = reconcile(None, bundle(castles=[Castle(0, 0, 1)]))
    assert result.is_empty


def test_unknown_castles_produce_no_movements():
    previous = KnownPlayer(player_id=1, name="A", alliance_id=1, castles=(Castle(0, 0, 1),))
    assert reconcile(previous, bundle(castles=None)).movements == []


def test_rename_flagged_once_per_pass():
    engine = ReconciliationEngine()
    previous = KnownPlayer(player_id=1, name="A", alliance_id=1)

    first = engine.reconcile(previous, bundle(name="B"))
    second = engine.reconcile(previous, bundle(name="B"))

    assert len(first.renames) == 1
    assert second.renames == []


def test_alliance_rename_only_when_alliance_is_unchanged():
    engine = ReconciliationEngine()
    previous = KnownPlayer(player_id=1, name="A", alliance_id=7, alliance_name="Old Guild")
    other = KnownPlayer(player_id=2, name="C", alliance_id=7, alliance_name="Old Guild")

    first = engine.reconcile(previous, bundle(alliance_id=7, alliance_name="New Guild"))
    second = engine.reconcile(other, bundle(player_id=2, name="C", alliance_id=7, alliance_name="New Guild"))
    moved = engine.reconcile(previous, bundle(alliance_id=8, alliance_name="Elsewhere"))

    assert first.alliance_rename.new_name == "New Guild"
    assert second.alliance_rename is None
    assert moved.alliance_rename is None
    assert moved.alliance_transfer.new_alliance_name == "Elsewhere"


def test_known_player_from_stored_row():
    known = KnownPlayer.from_row({
        "id": 3,
        "name": "Zed",
        "alliance_id": 9,
        "castles": [[1, 2, 1], [3, 4, 4]],
        "alliances": {"name": "Nine"},
    })
    assert known.castles == (Castle(1, 2, 1), Castle(3, 4, 4))
    assert known.alliance_name == "Nine"
