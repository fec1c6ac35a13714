"""
Unit tests for the processor token cache
"""
import asyncio
import time

import pytest

from conftest import make_token
from donation_gateway.services.payment_client import TokenGrant
from donation_gateway.services.token_cache import TokenCache, token_expiry


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class CountingFetcher:
    """Returns a new token on every call"""

    def __init__(self, lifetime_seconds: int = 2 * 3600, token=None):
        self.calls = 0
        self.lifetime_seconds = lifetime_seconds
        self.token = token

    async def __call__(self) -> TokenGrant:
        self.calls += 1
        await asyncio.sleep(0)
        token = self.token or make_token(self.lifetime_seconds + self.calls)
        return TokenGrant(token=token, raw_response={})


def test_token_expiry_reads_exp_claim():
    token = make_token(600)
    assert abs(token_expiry(token) - (time.time() + 600)) < 5


def test_token_expiry_unreadable():
    assert token_expiry("not-a-jwt") is None


@pytest.mark.parametrize("token", [None, 12345, b"not-text", {"exp": 1}])
def test_token_expiry_non_string(token):
    assert token_expiry(token) is None


class TestTokenCache:

    @pytest.mark.asyncio
    async def test_cached_token_reused(self):
        fetcher = CountingFetcher()
        cache = TokenCache(fetcher, refresh_margin=3600)

        first = await cache.get_token()
        second = await cache.get_token()

        assert first == second
        assert fetcher.calls == 1
        assert cache.has_valid_token

    @pytest.mark.asyncio
    async def test_refresh_inside_margin(self):
        """A token expiring within the margin is replaced"""
        fetcher = CountingFetcher(lifetime_seconds=2 * 3600)
        clock = FakeClock(time.time())
        cache = TokenCache(fetcher, refresh_margin=3600, clock=clock)

        first = await cache.get_token()
        clock.now += 1.5 * 3600
        second = await cache.get_token()

        assert first != second
        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_default_ttl_for_opaque_token(self):
        clock = FakeClock(1_000_000.0)
        cache = TokenCache(CountingFetcher(token="opaque-token"), default_ttl=7200, clock=clock)

        assert await cache.get_token() == "opaque-token"
        assert cache.expires_at == 1_000_000.0 + 7200

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self):
        fetcher = CountingFetcher()
        cache = TokenCache(fetcher)

        tokens = await asyncio.gather(*(cache.get_token() for _ in range(5)))

        assert len(set(tokens)) == 1
        assert fetcher.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self):
        fetcher = CountingFetcher()
        cache = TokenCache(fetcher)

        await cache.get_token()
        cache.invalidate()
        assert not cache.has_valid_token
        await cache.get_token()

        assert fetcher.calls == 2

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self):
        async def failing():
            raise RuntimeError("processor down")

        cache = TokenCache(failing)
        with pytest.raises(RuntimeError):
            await cache.get_token()
        assert not cache.has_valid_token
