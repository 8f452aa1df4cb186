"""
Shared fakes for the fill service tests.

``FakeSupabase`` mimics the PostgREST builder chain used by
``database.supabase_client`` against in-memory tables, including the
foreign key from ``players.alliance_id`` to ``alliances.id``, the unique
alliance id and the two RPCs of ``backend/sql/schema.sql``.
"""

import copy
import sys
import threading
from pathlib import Path

import pytest
from postgrest.exceptions import APIError

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from config import Config  # noqa: E402
from database.supabase_client import SupabaseClient  # noqa: E402
from gge_api.client import FetchResult, ResultKind  # noqa: E402

GREATEST_COLUMNS = (
    "might_all_time", "loot_all_time", "max_honor", "level", "legendary_level", "highest_fame"
)
CURRENT_COLUMNS = (
    "might_current", "loot_current", "honor", "current_fame",
    "remaining_peace_time", "remaining_relocation_time",
)


def make_config(**overrides) -> Config:
    values = {
        "supabase_url": "http://supabase.test",
        "supabase_key": "test-key",
        "supabase_service_key": None,
        "server_name": "FR1",
        "loki_url": None,
        "step_pause_seconds": 0,
        "reconnect_delay_first": 5,
        "reconnect_delay_second": 20,
    }
    values.update(overrides)
    return Config(**values)


class FakeResponse:
    def __init__(self, data):
        self.data = data


class _Negated:
    def __init__(self, query):
        self._query = query

    def is_(self, column, value):
        if value == "null":
            self._query._filters.append(lambda row: row.get(column) is not None)
        return self._query


class FakeQuery:
    """One ``table(...)`` builder chain."""

    def __init__(self, db, table):
        self._db = db
        self._table = table
        self._operation = "select"
        self._payload = None
        self._columns = "*"
        self._on_conflict = None
        self._filters = []
        self._order = None
        self._range = None
        self._limit = None

    def select(self, columns="*"):
        self._operation = "select"
        self._columns = columns
        return self

    def insert(self, rows):
        self._operation = "insert"
        self._payload = rows
        return self

    def upsert(self, rows, on_conflict=None):
        self._operation = "upsert"
        self._payload = rows
        self._on_conflict = on_conflict
        return self

    def update(self, values):
        self._operation = "update"
        self._payload = values
        return self

    def delete(self):
        self._operation = "delete"
        return self

    def eq(self, column, value):
        self._filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self._filters.append(lambda row: row.get(column) != value)
        return self

    def lt(self, column, value):
        self._filters.append(lambda row: row.get(column) is not None and row.get(column) < value)
        return self

    @property
    def not_(self):
        return _Negated(self)

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def range(self, start, end):
        self._range = (start, end)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def execute(self):
        return self._db.run(self)


class FakeRpc:
    def __init__(self, db, name, params):
        self._db = db
        self.name = name
        self.params = params

    def execute(self):
        return self._db.run_rpc(self)


class _Session:
    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


class _Postgrest:
    def __init__(self):
        self.session = _Session()


class FakeSupabase:
    """In-memory stand-in for ``supabase.Client``."""

    def __init__(self):
        self.tables = {}
        self.versions = {}
        self.calls = []
        # (table or "rpc:<name>", operation) -> list of exceptions raised in order
        self.failures = {}
        self.postgrest = _Postgrest()
        self._lock = threading.Lock()

    # Builder entry points

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params):
        return FakeRpc(self, name, params)

    # Helpers for tests

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def seed(self, table, *rows):
        self.rows(table).extend(copy.deepcopy(list(rows)))

    def fail_next(self, table, operation, error):
        self.failures.setdefault((table, operation), []).append(error)

    def calls_for(self, table, operation=None):
        return [c for c in self.calls if c[0] == table and (operation is None or c[1] == operation)]

    def _maybe_fail(self, table, operation):
        pending = self.failures.get((table, operation))
        if pending:
            raise pending.pop(0)

    # Execution

    def _check_alliance(self, row):
        alliance_id = row.get("alliance_id")
        if alliance_id is None:
            return
        if not any(a["id"] == alliance_id for a in self.rows("alliances")):
            raise APIError({
                "code": "23503",
                "message": "insert or update on table \"players\" violates foreign key constraint",
                "details": f"Key (alliance_id)=({alliance_id}) is not present in table \"alliances\".",
                "hint": None,
            })

    def _insert(self, table, rows):
        inserted = []
        for row in rows:
            row = copy.deepcopy(row)
            if table == "players":
                self._check_alliance(row)
            if table == "alliances" and any(a["id"] == row["id"] for a in self.rows("alliances")):
                raise APIError({
                    "code": "23505",
                    "message": "duplicate key value violates unique constraint \"alliances_pkey\"",
                    "details": None,
                    "hint": None,
                })
            self.rows(table).append(row)
            inserted.append(row)
        return inserted

    def run(self, query):
        with self._lock:
            table = query._table
            operation = query._operation
            self.calls.append((table, operation, copy.deepcopy(query._payload)))
            self._maybe_fail(table, operation)

            matching = [row for row in self.rows(table) if all(f(row) for f in query._filters)]

            if operation == "select":
                result = [copy.deepcopy(row) for row in matching]
                if table == "players" and "alliances(name)" in query._columns:
                    names = {a["id"]: a.get("name") for a in self.rows("alliances")}
                    for row in result:
                        alliance_id = row.get("alliance_id")
                        row["alliances"] = {"name": names.get(alliance_id)} if alliance_id is not None else None
                if query._order:
                    column, desc = query._order
                    result.sort(key=lambda row: (row.get(column) is None, row.get(column)), reverse=desc)
                if query._range:
                    start, end = query._range
                    result = result[start:end + 1]
                if query._limit is not None:
                    result = result[:query._limit]
                return FakeResponse(result)

            if operation == "insert":
                rows = query._payload if isinstance(query._payload, list) else [query._payload]
                return FakeResponse(self._insert(table, rows))

            if operation == "upsert":
                rows = query._payload if isinstance(query._payload, list) else [query._payload]
                keys = [k.strip() for k in (query._on_conflict or "id").split(",")]
                for row in rows:
                    existing = next((
                        r for r in self.rows(table) if all(r.get(k) == row.get(k) for k in keys)
                    ), None)
                    if existing is None:
                        self.rows(table).append(copy.deepcopy(row))
                    else:
                        existing.update(copy.deepcopy(row))
                return FakeResponse(rows)

            if operation == "update":
                if table == "players":
                    self._check_alliance(query._payload)
                for row in matching:
                    row.update(copy.deepcopy(query._payload))
                return FakeResponse([copy.deepcopy(row) for row in matching])

            if operation == "delete":
                self.tables[table] = [row for row in self.rows(table) if row not in matching]
                return FakeResponse(matching)

            raise AssertionError(f"Unsupported operation {operation}")

    def run_rpc(self, rpc):
        with self._lock:
            self.calls.append((f"rpc:{rpc.name}", "rpc", dict(rpc.params)))
            self._maybe_fail(f"rpc:{rpc.name}", "rpc")
            if rpc.name == "merge_staged_players":
                return FakeResponse(self._merge(rpc.params["p_pass_id"]))
            if rpc.name == "increment_fill_version":
                server = rpc.params["p_server"]
                self.versions[server] = self.versions.get(server, 0) + 1
                return FakeResponse(self.versions[server])
            raise AssertionError(f"Unknown rpc {rpc.name}")

    def _merge(self, pass_id):
        players = {row["id"]: row for row in self.rows("players")}
        staged = [row for row in self.rows("players_staging") if row["pass_id"] == pass_id]
        updated = 0
        for row in staged:
            player = players.get(row["id"])
            if player is None:
                continue
            for column in GREATEST_COLUMNS:
                player[column] = max(player.get(column) or 0, row.get(column) or 0)
            for column in CURRENT_COLUMNS + ("castles", "castles_realm"):
                if row.get(column) is not None:
                    player[column] = row[column]
            player["peace_disabled_at"] = row.get("peace_disabled_at")
            player["updated_at"] = "merged"
            updated += 1
        self.tables["players_staging"] = [
            row for row in self.rows("players_staging") if row["pass_id"] != pass_id
        ]
        return updated


class ScriptedAPI:
    """
    Stand-in for ``GGEAPIClient`` answering from a script.

    ``highscores`` maps ``(list_type, level_category, search_value)`` to a
    ``FetchResult`` or a list of them (consumed in order, last one repeated);
    anything unscripted answers EMPTY.
    """

    def __init__(self, highscores=None, players=None, areas=None):
        self.highscores = highscores or {}
        self.players = players or {}
        self.areas = areas or {}
        self.calls = []
        self.closed = False

    @staticmethod
    def _next(script, key):
        answer = script.get(key)
        if answer is None:
            return FetchResult(ResultKind.EMPTY, payload={"return_code": "0", "content": {}})
        if isinstance(answer, list):
            return answer.pop(0) if len(answer) > 1 else answer[0]
        return answer

    async def get_highscores(self, list_type, level_category, search_value):
        self.calls.append(("hgh", list_type, level_category, search_value))
        return self._next(self.highscores, (list_type, level_category, search_value))

    async def get_player_details(self, player_id):
        self.calls.append(("gdi", player_id))
        return self._next(self.players, player_id)

    async def get_map_area(self, kingdom, ax1, ay1, ax2, ay2):
        self.calls.append(("gaa", kingdom, ax1, ay1))
        return self._next(self.areas, (kingdom, ax1, ay1))

    async def close(self):
        self.closed = True


def player_info(player_id, name=None, alliance_id=-1, alliance_name=None, might=0, castles=(), **extra):
    """Player block as the remote reports it; castles are ``(x, y, type)`` in kingdom 0."""
    info = {
        "OID": player_id,
        "N": name if name is not None else f"player{player_id}",
        "AID": alliance_id,
        "AN": alliance_name or "",
        "MP": might,
        "AP": [[0, index, x, y, castle_type] for index, (x, y, castle_type) in enumerate(castles)],
    }
    info.update(extra)
    return info


def ok(content):
    return FetchResult(ResultKind.OK, payload={"return_code": "0", "content": content})


def ranking_page(rows, total):
    """``rows`` are ``(rank, points, info)`` tuples."""
    return ok({"L": [list(row) for row in rows], "LR": total})


def failure(reason="return_code=112"):
    return FetchResult.failure(reason)


async def no_sleep(_seconds):
    return None


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def db(config, fake_db):
    return SupabaseClient(config, client_factory=lambda url, key: fake_db, sleep=lambda _s: None)
