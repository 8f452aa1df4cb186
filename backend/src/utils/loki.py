"""
Push of pass start/end records to a Loki endpoint.

Loki is an optional log collector: when ``LOKI_URL`` is unset the pusher
does nothing, and a failed push is logged locally without affecting the pass.
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

LOKI_JOB = "cron-scraper"


def build_push_payload(level: str, message: str, labels: Dict[str, str], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Loki push API body carrying one JSON line."""
    line = json.dumps({"message": message, **fields}, default=str)
    return {
        "streams": [{
            "stream": {"job": LOKI_JOB, "level": level, **labels},
            "values": [[str(time.time_ns()), line]],
        }]
    }


class LokiPusher:
    """Ships structured pass records to Loki through httpx."""

    def __init__(self, url: Optional[str], server: str, http_client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.server = server
        self._client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def push(self, level: str, message: str, **fields):
        if not self.enabled:
            return
        payload = build_push_payload(level, message, {"server": self.server}, fields)
        client = self._client or httpx.AsyncClient(timeout=5.0)
        try:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Loki push failed", extra={"error": str(e), "loki_url": self.url})
        finally:
            if self._client is None:
                await client.aclose()
