"""
Unit tests for the sliding window rate limiter (in-memory backend)
"""
import pytest
from starlette.requests import Request

from donation_gateway.core.rate_limiter import MEMORY_SWEEP_INTERVAL_SECONDS, RateLimiter, client_ip


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_request(peer: str, forwarded: str = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "headers": headers, "client": (peer, 40000)})


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_limit_enforced_per_bucket(self):
        limiter = RateLimiter(enabled=True)

        results = [await limiter.check_limit("1.2.3.4", "initiate", limit=3, window=60) for _ in range(4)]

        assert results == [True, True, True, False]
        assert await limiter.check_limit("1.2.3.4", "status", limit=3, window=60)
        assert await limiter.check_limit("5.6.7.8", "initiate", limit=3, window=60)

    @pytest.mark.asyncio
    async def test_disabled_limiter_allows_everything(self):
        limiter = RateLimiter(enabled=False)

        for _ in range(10):
            assert await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)

    @pytest.mark.asyncio
    async def test_reset_clears_client(self):
        limiter = RateLimiter(enabled=True)
        await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)
        assert not await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)

        await limiter.reset("1.2.3.4", "initiate")

        assert await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)

    @pytest.mark.asyncio
    async def test_unreachable_redis_falls_back_to_memory(self):
        limiter = RateLimiter(redis_url="redis://127.0.0.1:1/0", enabled=True)

        assert await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)
        assert not await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)
        await limiter.close()

    @pytest.mark.asyncio
    async def test_window_expiry_allows_again(self):
        clock = FakeClock(1_000.0)
        limiter = RateLimiter(enabled=True, clock=clock)
        await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)

        clock.now += 61

        assert await limiter.check_limit("1.2.3.4", "initiate", limit=1, window=60)

    @pytest.mark.asyncio
    async def test_idle_clients_are_swept(self):
        """Keys for clients that stopped sending do not accumulate"""
        clock = FakeClock(1_000.0)
        limiter = RateLimiter(enabled=True, clock=clock)
        for octet in range(50):
            await limiter.check_limit(f"10.0.0.{octet}", "initiate", limit=5, window=60)
        assert len(limiter._in_memory_store) == 50

        clock.now += max(61, MEMORY_SWEEP_INTERVAL_SECONDS)
        await limiter.check_limit("10.0.1.1", "initiate", limit=5, window=60)

        assert list(limiter._in_memory_store) == ["rate_limit:initiate:10.0.1.1"]

    @pytest.mark.asyncio
    async def test_sweep_keeps_active_clients(self):
        clock = FakeClock(1_000.0)
        limiter = RateLimiter(enabled=True, clock=clock)
        await limiter.check_limit("10.0.0.1", "initiate", limit=5, window=900)

        clock.now += MEMORY_SWEEP_INTERVAL_SECONDS
        await limiter.check_limit("10.0.0.2", "initiate", limit=5, window=900)

        assert "rate_limit:initiate:10.0.0.1" in limiter._in_memory_store


class TestClientIp:

    def test_forwarded_header_ignored_from_untrusted_peer(self):
        request = make_request("203.0.113.7", forwarded="198.51.100.1")
        assert client_ip(request, frozenset()) == "203.0.113.7"

    def test_forwarded_header_honoured_from_trusted_proxy(self):
        request = make_request("10.0.0.2", forwarded="198.51.100.1")
        assert client_ip(request, frozenset({"10.0.0.2"})) == "198.51.100.1"

    def test_spoofed_leftmost_hop_ignored(self):
        """The proxy appends the real peer, so the nearest untrusted hop is used"""
        request = make_request("10.0.0.2", forwarded="1.1.1.1, 198.51.100.1")
        assert client_ip(request, frozenset({"10.0.0.2"})) == "198.51.100.1"

    def test_chained_trusted_proxies_skipped(self):
        request = make_request("10.0.0.2", forwarded="198.51.100.1, 10.0.0.3")
        assert client_ip(request, frozenset({"10.0.0.2", "10.0.0.3"})) == "198.51.100.1"

    def test_trusted_proxy_without_header(self):
        assert client_ip(make_request("10.0.0.2"), frozenset({"10.0.0.2"})) == "10.0.0.2"
