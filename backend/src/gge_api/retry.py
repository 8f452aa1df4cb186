"""
Retry and pacing around the empire API client.

The remote fails transiently (timeouts, empty windows in the middle of a
ranking that show up again a few seconds later), so every call site wraps
its requests in a ``RetryPolicy``. Listing calls return an ``EXHAUSTED``
sentinel when retries run out so the caller stops paginating; must-succeed
calls raise ``EntityFetchError`` for the single entity concerned.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Optional, Tuple

from gge_api.client import EntityFetchError, FetchResult, GGEAPIClient, ResultKind

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bounds for one call site."""

    # Retries after the first call
    max_retries: int
    delay: float
    backoff: str = "fixed"  # fixed or exponential
    max_delay: float = 60.0
    # Treat an empty page as retryable (mid-ranking windows must not be empty)
    retry_on_empty: bool = False
    # Failure reasons that are final answers, not transient conditions
    non_retryable_reasons: Tuple[str, ...] = ()

    def delay_for(self, attempt: int) -> float:
        if self.backoff == "exponential":
            return min(self.delay * (2 ** attempt), self.max_delay)
        return min(self.delay, self.max_delay)

    def should_retry(self, result: FetchResult) -> bool:
        if result.kind is ResultKind.FAILURE:
            return result.reason not in self.non_retryable_reasons
        if result.kind is ResultKind.EMPTY:
            return self.retry_on_empty
        return False

    def scaled(self, factor: float) -> "RetryPolicy":
        return replace(self, delay=self.delay * factor)


# Presets per call site
EVENT_FIRST_PAGE = RetryPolicy(max_retries=3, delay=3.0)
EVENT_PAGE = RetryPolicy(max_retries=7, delay=2.0, retry_on_empty=True)
MIGHT_FIRST_PAGE = RetryPolicy(max_retries=10, delay=10.0)
MIGHT_PAGE = RetryPolicy(max_retries=10, delay=10.0, retry_on_empty=True)
LOOT_FIRST_PAGE = RetryPolicy(max_retries=3, delay=3.0)
LOOT_PAGE = RetryPolicy(max_retries=10, delay=3.0, retry_on_empty=True)
NEGATIVE_LOOT_PAGE = RetryPolicy(max_retries=3, delay=3.0, retry_on_empty=True)
PLAYER_DETAILS = RetryPolicy(
    max_retries=3,
    delay=2.0,
    backoff="exponential",
    non_retryable_reasons=("Timeout",)
)
MAP_AREA = RetryPolicy(max_retries=2, delay=2.0)


class Pacer:
    """Pauses briefly after every ``every`` requests."""

    def __init__(self, every: int, pause: float, sleep: Sleep = asyncio.sleep):
        self.every = every
        self.pause = pause
        self.count = 0
        self._sleep = sleep

    async def tick(self):
        self.count += 1
        if self.every > 0 and self.count % self.every == 0:
            await self._sleep(self.pause)


class RetryingFetcher:
    """Applies retry policies and pacing to empire API calls."""

    def __init__(
        self,
        client: GGEAPIClient,
        pacer: Optional[Pacer] = None,
        delay_scale: float = 1.0,
        max_delay: Optional[float] = None,
        sleep: Sleep = asyncio.sleep
    ):
        self.client = client
        self.pacer = pacer
        self.delay_scale = delay_scale
        # Ceiling on any single wait, whatever the policy asks for
        self.max_delay = max_delay
        self.sleep = sleep

    async def _call(self, call: Callable[[], Awaitable[FetchResult]], pacer: Optional[Pacer]) -> FetchResult:
        result = await call()
        if pacer is not None:
            await pacer.tick()
        return result

    async def fetch_listing(
        self,
        call: Callable[[], Awaitable[FetchResult]],
        policy: RetryPolicy,
        pacer: Optional[Pacer] = None,
        description: str = ""
    ) -> FetchResult:
        """
        Run a listing call under ``policy``.

        Returns:
            The first non-retryable result, or an EXHAUSTED result once the
            policy's retries are spent.
        """
        pacer = pacer or self.pacer
        result = await self._call(call, pacer)
        attempt = 0
        while policy.should_retry(result) and attempt < policy.max_retries:
            wait_time = policy.delay_for(attempt) * self.delay_scale
            if self.max_delay is not None:
                wait_time = min(wait_time, self.max_delay)
            logger.debug("Retrying empire API call", extra={
                "call": description,
                "attempt": attempt + 1,
                "wait_time": wait_time,
                "reason": result.reason or result.kind.value
            })
            await self.sleep(wait_time)
            result = await self._call(call, pacer)
            attempt += 1

        if policy.should_retry(result):
            logger.warning("Empire API call exhausted its retries", extra={
                "call": description,
                "attempts": attempt + 1,
                "reason": result.reason or result.kind.value
            })
            return FetchResult.exhausted(result.reason or f"{result.kind.value} page")
        return result

    async def fetch_required(
        self,
        call: Callable[[], Awaitable[FetchResult]],
        policy: RetryPolicy,
        pacer: Optional[Pacer] = None,
        description: str = ""
    ) -> FetchResult:
        """
        Run a must-succeed call under ``policy``.

        Raises:
            EntityFetchError: When retries are exhausted
        """
        result = await self.fetch_listing(call, policy, pacer=pacer, description=description)
        if result.kind is ResultKind.EXHAUSTED:
            raise EntityFetchError(f"Request failed after retries: {description}", reason=result.reason)
        return result

    async def highscores(
        self,
        list_type: int,
        level_category: int,
        search_value: int,
        policy: RetryPolicy,
        pacer: Optional[Pacer] = None
    ) -> FetchResult:
        """Fetch one ranking window as a listing call."""
        return await self.fetch_listing(
            lambda: self.client.get_highscores(list_type, level_category, search_value),
            policy,
            pacer=pacer,
            description=f"hgh LT={list_type} LID={level_category} SV={search_value}"
        )
