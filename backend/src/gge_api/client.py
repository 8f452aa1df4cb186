"""
Empire API client with rate limiting and response classification.

Handles all communication with the empire-api proxy in front of the game
servers. Requests use the proxy's ``<command>/<"KEY":value,...>`` path
grammar rather than query strings, and every logical outcome is reported
with HTTP 200, so responses are classified from the ``return_code`` field.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx
from asyncio_throttle import Throttler

from config import Config

logger = logging.getLogger(__name__)

# Characters left untouched by JavaScript's encodeURI, which the proxy expects
_ENCODE_URI_SAFE = ";,/?:@&=+$!*'()#"


class GGEAPIError(Exception):
    """Base exception for empire API errors."""
    pass


class EntityFetchError(GGEAPIError):
    """Raised when a must-succeed request for one entity exhausted its retries."""

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class ResultKind(Enum):
    """Outcome of one remote call."""
    OK = "ok"
    EMPTY = "empty"  # return_code "0" with nothing in it (e.g. no event running)
    FAILURE = "failure"
    EXHAUSTED = "exhausted"  # set by the retry controller only


@dataclass(frozen=True)
class FetchResult:
    """Tagged result of a remote call."""

    kind: ResultKind
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is ResultKind.OK

    @property
    def content(self) -> Dict[str, Any]:
        if not self.payload or not isinstance(self.payload.get("content"), dict):
            return {}
        return self.payload["content"]

    @property
    def rows(self) -> List[Any]:
        """Ranked rows (``content.L``)."""
        return self.content.get("L") or []

    @property
    def total(self) -> Optional[int]:
        """Remote-reported size of the ranking (``content.LR``)."""
        value = self.content.get("LR")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @classmethod
    def failure(cls, reason: str, payload: Optional[Dict[str, Any]] = None) -> "FetchResult":
        return cls(ResultKind.FAILURE, payload=payload, reason=reason)

    @classmethod
    def exhausted(cls, reason: Optional[str]) -> "FetchResult":
        return cls(ResultKind.EXHAUSTED, reason=reason)


def encode_parameters(parameters: Optional[Dict[str, Any]]) -> str:
    """
    Encode parameters in the proxy's key:value grammar.

    ``{"LT": 6, "SV": "5"}`` becomes ``"LT":6,"SV":"5"``; no parameters
    encode as ``null``.
    """
    if not parameters:
        return "null"
    parts = []
    for key, value in parameters.items():
        if isinstance(value, str):
            parts.append(f'"{key}":"{value}"')
        else:
            parts.append(f'"{key}":{value}')
    return ",".join(parts)


def classify_payload(payload: Any) -> FetchResult:
    """Classify a decoded JSON envelope."""
    if not isinstance(payload, dict):
        return FetchResult.failure("malformed payload")
    if payload.get("error"):
        return FetchResult.failure(str(payload["error"]), payload)
    return_code = str(payload.get("return_code"))
    if return_code != "0":
        return FetchResult.failure(f"return_code={return_code}", payload)
    content = payload.get("content")
    if not content:
        return FetchResult(ResultKind.EMPTY, payload=payload)
    if isinstance(content, dict) and "L" in content and not content["L"]:
        return FetchResult(ResultKind.EMPTY, payload=payload)
    return FetchResult(ResultKind.OK, payload=payload)


class GGEAPIClient:
    """Client for the empire-api proxy. Never retries; see ``gge_api.retry``."""

    def __init__(self, config: Config, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base_url = config.api_base_url

        self.throttler = Throttler(
            rate_limit=config.max_requests_per_second,
            period=1.0
        )
        self.min_interval = config.min_request_interval
        self.last_request_time = 0.0

        self.client = http_client or httpx.AsyncClient(
            timeout=config.request_timeout,
            follow_redirects=True,
            headers={"Accept": "application/json"}
        )

    async def _wait_for_rate_limit(self):
        """Wait to respect rate limiting."""
        await self.throttler.acquire()

        if self.min_interval > 0:
            time_since_last = time.time() - self.last_request_time
            if time_since_last < self.min_interval:
                wait_time = self.min_interval - time_since_last
                # Add jitter (±25%)
                jitter = wait_time * 0.25 * (random.random() * 2 - 1)
                await asyncio.sleep(wait_time + jitter)

        self.last_request_time = time.time()

    def build_url(self, command: str, parameters: Optional[Dict[str, Any]]) -> str:
        raw = f"{self.base_url}{command}/{encode_parameters(parameters)}"
        return quote(raw, safe=_ENCODE_URI_SAFE)

    async def fetch(self, command: str, parameters: Optional[Dict[str, Any]] = None) -> FetchResult:
        """
        Issue one call and classify the response.

        Args:
            command: Proxy command (``hgh``, ``gdi``, ``gaa``...)
            parameters: Command parameters

        Returns:
            FetchResult tagged OK, EMPTY or FAILURE
        """
        url = self.build_url(command, parameters)
        await self._wait_for_rate_limit()

        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            logger.debug("Request to empire API failed", extra={
                "command": command,
                "error": str(e),
                "error_type": type(e).__name__
            })
            return FetchResult.failure(f"{type(e).__name__}: {e}")

        if not response.is_success:
            return FetchResult.failure(f"http_status={response.status_code}")

        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            logger.debug("Empire API returned a non-JSON body", extra={
                "command": command,
                "response_preview": response.text[:200]
            })
            return FetchResult.failure(f"invalid json: {e}")

        return classify_payload(payload)

    async def get_highscores(self, list_type: int, level_category: int, search_value: int) -> FetchResult:
        """
        Get one window of a highscore ranking.

        Args:
            list_type: Ranking code (``LT``), e.g. 2 for loot, 6 for might
            level_category: Level bracket (``LID``)
            search_value: Rank the returned window is centred on (``SV``)
        """
        return await self.fetch("hgh", {
            "LT": int(list_type),
            "LID": int(level_category),
            "SV": str(search_value)
        })

    async def get_player_details(self, player_id: int) -> FetchResult:
        """Get the detail block of one player (``gdi``)."""
        return await self.fetch("gdi", {"PID": int(player_id)})

    async def get_map_area(self, kingdom: int, ax1: int, ay1: int, ax2: int, ay2: int) -> FetchResult:
        """Get the map objects of one rectangular area (``gaa``)."""
        return await self.fetch("gaa", {
            "KID": int(kingdom),
            "AX1": int(ax1),
            "AY1": int(ay1),
            "AX2": int(ax2),
            "AY2": int(ay2)
        })

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
