"""
Supabase client for database operations.

Wraps the PostgREST builder chain with the reconnect policy of the fill
service: a connection-level failure recreates the client after a short
wait, then after a longer one, and is promoted to ``StorageConnectionError``
when the second reconnect fails too. Logical errors (constraint violations)
are raised unchanged as ``postgrest.exceptions.APIError`` so callers can
recover the ones they know about.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client, Client

from config import Config

logger = logging.getLogger(__name__)

FOREIGN_KEY_VIOLATION = "23503"
UNIQUE_VIOLATION = "23505"


class StorageError(Exception):
    """Base exception for storage errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when the storage stays unreachable after every reconnect attempt."""
    pass


def is_foreign_key_violation(error: Exception) -> bool:
    return isinstance(error, APIError) and str(error.code) == FOREIGN_KEY_VIOLATION


def is_unique_violation(error: Exception) -> bool:
    return isinstance(error, APIError) and str(error.code) == UNIQUE_VIOLATION


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseClient:
    """Client for interacting with Supabase database."""

    def __init__(
        self,
        config: Config,
        client_factory: Optional[Callable[[str, str], Client]] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.client: Optional[Client] = None
        self._client_factory = client_factory or create_client
        self._sleep = sleep
        self.reconnects = 0
        self._initialize_client()

    def _initialize_client(self):
        """Initialize Supabase client."""
        if not self.config.supabase_url or not self.config.supabase_key:
            raise ValueError("Supabase URL and key are required")

        # Use service key if available for admin operations, otherwise use anon key
        key = self.config.supabase_service_key or self.config.supabase_key

        self.client = self._client_factory(self.config.supabase_url, key)

        logger.info("Initialized Supabase client", extra={
            "url": self.config.supabase_url,
            "using_service_key": bool(self.config.supabase_service_key)
        })

    def _execute(self, operation: str, build: Callable[[Client], Any]):
        """
        Build and execute one query under the reconnect policy.

        Args:
            operation: Name used in logs
            build: Returns the query builder for the given client

        Raises:
            StorageConnectionError: When both reconnect tiers failed
            APIError: Logical database errors, unchanged
        """
        delays = [self.config.reconnect_delay_first, self.config.reconnect_delay_second]
        while True:
            try:
                return build(self.client).execute()
            except httpx.TransportError as e:
                if not delays:
                    logger.error("Storage unreachable after reconnect attempts", extra={
                        "operation": operation,
                        "error": str(e),
                        "error_type": type(e).__name__
                    })
                    raise StorageConnectionError(f"{operation}: {e}") from e
                delay = delays.pop(0)
                logger.warning("Storage connection lost, recreating client", extra={
                    "operation": operation,
                    "wait_time": delay,
                    "error": str(e)
                })
                self._sleep(delay)
                self.reconnects += 1
                self._initialize_client()

    # Players and alliances

    def get_known_players(self) -> List[Dict[str, Any]]:
        """
        Load the stored snapshot needed for reconciliation.

        Returns:
            Rows with ``id``, ``name``, ``alliance_id``, ``castles`` and the
            joined ``alliances(name)``
        """
        page_size = self.config.snapshot_page_size
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            result = self._execute("get_known_players", lambda c: c.table("players").select(
                "id, name, alliance_id, castles, alliances(name)"
            ).order("id").range(start, start + page_size - 1))
            page = result.data or []
            rows.extend(page)
            if len(page) < page_size:
                break
            start += page_size
        return rows

    def insert_player(self, player_data: Dict[str, Any]):
        """
        Insert a new player.

        Raises:
            APIError: ``23503`` when the alliance does not exist yet
        """
        result = self._execute("insert_player", lambda c: c.table("players").insert(player_data))
        return result.data

    def insert_alliance(self, alliance_id: int, name: Optional[str]) -> bool:
        """
        Create an alliance.

        Returns:
            False when the alliance already existed
        """
        try:
            self._execute("insert_alliance", lambda c: c.table("alliances").insert({
                "id": alliance_id,
                "name": name
            }))
        except APIError as e:
            if is_unique_violation(e):
                return False
            raise
        return True

    def update_player(self, player_id: int, values: Dict[str, Any]):
        result = self._execute("update_player", lambda c: c.table("players").update(
            {**values, "updated_at": _now_iso()}
        ).eq("id", player_id))
        return result.data

    def update_alliance_name(self, alliance_id: int, name: str):
        result = self._execute("update_alliance_name", lambda c: c.table("alliances").update(
            {"name": name}
        ).eq("id", alliance_id))
        return result.data

    def clear_player(self, player_id: int):
        """Empty a player's castles and alliance; players are never deleted."""
        return self.update_player(player_id, {
            "castles": [],
            "castles_realm": [],
            "alliance_id": None
        })

    def get_stale_player_ids(self, updated_before: str) -> List[int]:
        """Players still holding castles that no ranking reported since ``updated_before``."""
        page_size = self.config.snapshot_page_size
        ids: List[int] = []
        start = 0
        while True:
            result = self._execute("get_stale_player_ids", lambda c: c.table("players").select(
                "id"
            ).lt("updated_at", updated_before).not_.is_("castles", "null").order("id").range(
                start, start + page_size - 1
            ))
            page = result.data or []
            ids.extend(row["id"] for row in page)
            if len(page) < page_size:
                break
            start += page_size
        return ids

    # History

    def insert_rows(self, table: str, rows: List[Dict[str, Any]]):
        """Append rows to a history table."""
        if not rows:
            return None
        result = self._execute(f"insert:{table}", lambda c: c.table(table).insert(rows))
        return result.data

    # Bulk merge

    def insert_staging_chunk(self, rows: List[Dict[str, Any]]):
        if not rows:
            return None
        result = self._execute("insert_staging_chunk", lambda c: c.table("players_staging").insert(rows))
        return result.data

    def merge_staged_players(self, pass_id: str) -> int:
        """
        Apply the staged rows of a pass to ``players`` in one set-based update.

        Returns:
            Number of players updated
        """
        result = self._execute("merge_staged_players", lambda c: c.rpc(
            "merge_staged_players", {"p_pass_id": pass_id}
        ))
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else 0
        return int(data or 0)

    # Statistics and markers

    def get_latest_server_statistics(self) -> Optional[Dict[str, Any]]:
        result = self._execute("get_latest_server_statistics", lambda c: c.table(
            "server_statistics"
        ).select("*").order("created_at", desc=True).limit(1))
        return result.data[0] if result.data else None

    def insert_server_statistics(self, row: Dict[str, Any]):
        result = self._execute("insert_server_statistics", lambda c: c.table("server_statistics").insert(row))
        return result.data

    def clear_parameters(self):
        """Remove every progress marker left by the previous pass."""
        self._execute("clear_parameters", lambda c: c.table("parameters").delete().neq("identifier", ""))

    def update_parameter(self, identifier: str, value: Any):
        result = self._execute("update_parameter", lambda c: c.table("parameters").upsert({
            "identifier": identifier,
            "value": str(value),
            "updated_at": _now_iso()
        }, on_conflict="identifier"))
        return result.data

    def get_parameters(self) -> Dict[str, Any]:
        result = self._execute("get_parameters", lambda c: c.table("parameters").select(
            "identifier, value, updated_at"
        ))
        return {row["identifier"]: row for row in (result.data or [])}

    def increment_fill_version(self, server: str) -> int:
        """Bump the per-server version counter polled by downstream consumers."""
        result = self._execute("increment_fill_version", lambda c: c.rpc(
            "increment_fill_version", {"p_server": server}
        ))
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else 0
        return int(data or 0)

    # Dungeons

    def get_dungeons(self, kingdom: int) -> List[Dict[str, Any]]:
        result = self._execute("get_dungeons", lambda c: c.table("dungeons").select(
            "kid, position_x, position_y, attack_cooldown, player_id, updated_at"
        ).eq("kid", kingdom))
        return result.data or []

    def upsert_dungeons(self, rows: List[Dict[str, Any]]):
        if not rows:
            return None
        result = self._execute("upsert_dungeons", lambda c: c.table("dungeons").upsert(
            rows,
            on_conflict="kid,position_x,position_y"
        ))
        return result.data

    def close(self):
        """Close the PostgREST HTTP session."""
        postgrest = getattr(self.client, "postgrest", None)
        session = getattr(postgrest, "session", None)
        if session is not None:
            session.close()
        logger.debug("Supabase client closed")
