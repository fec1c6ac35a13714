"""
Rate Limiting Module
Sliding window rate limiting with Redis backend and in-memory fallback
"""
import time
from typing import Callable, Dict, FrozenSet, List, Optional

import redis.asyncio as redis
import structlog
from fastapi import HTTPException, Request

from donation_gateway.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# Idle in-memory keys are swept at most this often
MEMORY_SWEEP_INTERVAL_SECONDS = 60


class RateLimiter:
    """Sliding window rate limiter keyed by client and bucket"""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        enabled: bool = True,
        clock: Callable[[], float] = time.time
    ):
        self.enabled = enabled
        self.redis_url = redis_url
        self.redis_client: Optional[redis.Redis] = None
        self._redis_failed = False
        self._clock = clock
        self._in_memory_store: Dict[str, List[float]] = {}
        self._longest_window = 0
        self._last_sweep = 0.0

    async def _get_redis_client(self) -> Optional[redis.Redis]:
        """Get or create Redis client"""
        if not self.redis_url or self._redis_failed:
            return None

        if not self.redis_client:
            try:
                self.redis_client = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True
                )
                await self.redis_client.ping()
                logger.info("Connected to Redis for rate limiting")
            except Exception as e:
                logger.warning("Redis connection failed, using in-memory store", error=str(e))
                self.redis_client = None
                self._redis_failed = True

        return self.redis_client

    @staticmethod
    def _key(client_id: str, bucket: str) -> str:
        return f"rate_limit:{bucket}:{client_id}"

    async def check_limit(self, client_id: str, bucket: str, limit: int, window: int) -> bool:
        """
        Check if request is within rate limit
        Returns True if allowed, False if rate limit exceeded
        """
        if not self.enabled:
            return True

        key = self._key(client_id, bucket)
        current_time = self._clock()

        redis_client = await self._get_redis_client()
        if redis_client:
            return await self._check_redis(redis_client, key, current_time, limit, window)
        return self._check_memory(key, current_time, limit, window)

    async def _check_redis(
        self,
        redis_client: redis.Redis,
        key: str,
        current_time: float,
        limit: int,
        window: int
    ) -> bool:
        """Check rate limit using Redis sorted sets"""
        try:
            window_start = current_time - window

            pipe = redis_client.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            pipe.zadd(key, {str(current_time): current_time})
            pipe.expire(key, window)

            results = await pipe.execute()
            request_count = results[1]

            return request_count < limit

        except Exception as e:
            logger.error("Redis rate limit check failed", error=str(e))
            return self._check_memory(key, current_time, limit, window)

    def _check_memory(self, key: str, current_time: float, limit: int, window: int) -> bool:
        """Fallback in-memory rate limiting"""
        window_start = current_time - window
        self._longest_window = max(self._longest_window, window)
        self._sweep_memory(current_time)

        timestamps = [ts for ts in self._in_memory_store.get(key, []) if ts > window_start]

        if len(timestamps) >= limit:
            self._in_memory_store[key] = timestamps
            return False

        timestamps.append(current_time)
        self._in_memory_store[key] = timestamps
        return True

    def _sweep_memory(self, current_time: float):
        """Drop keys whose newest request has left every window"""
        if current_time - self._last_sweep < MEMORY_SWEEP_INTERVAL_SECONDS:
            return
        self._last_sweep = current_time

        cutoff = current_time - self._longest_window
        stale = [key for key, timestamps in self._in_memory_store.items()
                 if not timestamps or timestamps[-1] <= cutoff]
        for key in stale:
            del self._in_memory_store[key]
        if stale:
            logger.debug("Swept idle rate limit keys", count=len(stale))

    async def reset(self, client_id: str, bucket: str):
        """Reset rate limit for a client"""
        key = self._key(client_id, bucket)

        redis_client = await self._get_redis_client()
        if redis_client:
            try:
                await redis_client.delete(key)
            except Exception as e:
                logger.error("Error resetting rate limit", error=str(e))

        self._in_memory_store.pop(key, None)

    async def close(self):
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None


def client_ip(request: Request, trusted_proxies: Optional[FrozenSet[str]] = None) -> str:
    """
    Address of the connecting peer. X-Forwarded-For is only honoured when the
    peer is a configured proxy, and then the nearest untrusted hop wins.
    """
    peer = request.client.host if request.client else "unknown"
    if trusted_proxies is None:
        trusted_proxies = get_settings().trusted_proxy_ips
    if peer not in trusted_proxies:
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if not forwarded:
        return peer
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted_proxies:
            return hop
    return hops[0] if hops else peer


def get_rate_limiter(request: Request) -> RateLimiter:
    """Dependency returning the process-wide limiter built at startup"""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        settings = get_settings()
        limiter = RateLimiter(redis_url=settings.redis_url, enabled=settings.rate_limit_enabled)
        request.app.state.rate_limiter = limiter
    return limiter


def rate_limit(bucket: str, limit_for: Callable[[Settings], int], message: str):
    """Build a dependency enforcing `limit_for(settings)` requests per window"""

    async def dependency(request: Request):
        settings = get_settings()
        limiter = get_rate_limiter(request)
        address = client_ip(request, settings.trusted_proxy_ips)
        allowed = await limiter.check_limit(
            address,
            bucket,
            limit_for(settings),
            settings.rate_limit_window_seconds,
        )
        if not allowed:
            logger.warning("Rate limit exceeded", bucket=bucket, client_ip=address)
            raise HTTPException(
                status_code=429,
                detail=message,
                headers={"Retry-After": str(settings.rate_limit_window_seconds)},
            )

    return dependency
