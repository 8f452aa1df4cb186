"""Tests for retry policies, pacing and the retrying fetcher."""

import asyncio

import pytest

from conftest import ScriptedAPI, failure, no_sleep, ranking_page
from gge_api import retry
from gge_api.client import EntityFetchError, FetchResult, ResultKind
from gge_api.retry import Pacer, RetryingFetcher, RetryPolicy

EMPTY = FetchResult(ResultKind.EMPTY, payload={"return_code": "0", "content": {"L": []}})


class SleepRecorder:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


def test_fixed_and_exponential_delays():
    fixed = RetryPolicy(max_retries=3, delay=2.0)
    exponential = RetryPolicy(max_retries=5, delay=2.0, backoff="exponential", max_delay=10.0)
    assert [fixed.delay_for(a) for a in range(3)] == [2.0, 2.0, 2.0]
    assert [exponential.delay_for(a) for a in range(4)] == [2.0, 4.0, 8.0, 10.0]


def test_empty_pages_retry_only_when_the_policy_says_so():
    assert retry.EVENT_PAGE.should_retry(EMPTY)
    assert not retry.EVENT_FIRST_PAGE.should_retry(EMPTY)
    assert retry.PLAYER_DETAILS.should_retry(failure("http_status=502"))
    assert not retry.PLAYER_DETAILS.should_retry(failure("Timeout"))


def test_listing_recovers_after_transient_failures():
    page = ranking_page([(1, 10, {"OID": 1})], 1)
    api = ScriptedAPI(highscores={(6, 1, 5): [failure(), failure(), page]})
    sleeper = SleepRecorder()
    fetcher = RetryingFetcher(api, sleep=sleeper)

    result = asyncio.run(fetcher.highscores(6, 1, 5, retry.MIGHT_PAGE))

    assert result.ok
    assert sleeper.waits == [10.0, 10.0]
    assert len(api.calls) == 3


def test_listing_returns_exhausted_sentinel():
    api = ScriptedAPI(highscores={(51, 1, 5): [EMPTY]})
    fetcher = RetryingFetcher(api, sleep=no_sleep)

    result = asyncio.run(fetcher.highscores(51, 1, 5, retry.EVENT_PAGE))

    assert result.kind is ResultKind.EXHAUSTED
    # First call plus every retry
    assert len(api.calls) == retry.EVENT_PAGE.max_retries + 1


def test_delay_scale_shrinks_waits():
    api = ScriptedAPI(highscores={(2, 1, 5): [failure(), ranking_page([(1, 1, {"OID": 1})], 1)]})
    sleeper = SleepRecorder()
    fetcher = RetryingFetcher(api, delay_scale=0.1, sleep=sleeper)

    asyncio.run(fetcher.highscores(2, 1, 5, retry.LOOT_PAGE))

    assert sleeper.waits == [pytest.approx(0.3)]


def test_required_fetch_raises_for_the_single_entity():
    api = ScriptedAPI(players={42: [failure("http_status=503")]})
    fetcher = RetryingFetcher(api, sleep=no_sleep)

    with pytest.raises(EntityFetchError) as excinfo:
        asyncio.run(fetcher.fetch_required(
            lambda: api.get_player_details(42), retry.PLAYER_DETAILS, description="gdi PID=42"
        ))
    assert excinfo.value.reason == "http_status=503"


def test_required_fetch_returns_non_retryable_failure():
    api = ScriptedAPI(players={42: failure("Timeout")})
    fetcher = RetryingFetcher(api, sleep=no_sleep)

    result = asyncio.run(fetcher.fetch_required(lambda: api.get_player_details(42), retry.PLAYER_DETAILS))

    assert result.kind is ResultKind.FAILURE
    assert len(api.calls) == 1


def test_pacer_pauses_every_n_requests():
    sleeper = SleepRecorder()
    pacer = Pacer(every=3, pause=0.15, sleep=sleeper)

    async def run():
        for _ in range(7):
            await pacer.tick()

    asyncio.run(run())
    assert pacer.count == 7
    assert sleeper.waits == [0.15, 0.15]


def test_waits_are_capped_by_the_fetcher_ceiling():
    api = ScriptedAPI(highscores={(6, 1, 5): [failure(), failure(), ranking_page([(1, 10, {"OID": 1})], 1)]})
    sleeper = SleepRecorder()
    fetcher = RetryingFetcher(api, max_delay=4.0, sleep=sleeper)

    asyncio.run(fetcher.highscores(6, 1, 5, retry.MIGHT_PAGE))

    assert sleeper.waits == [4.0, 4.0]
