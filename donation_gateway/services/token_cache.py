"""
Process-local cache for the processor session token
"""
import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog
from jose import JWTError, jwt

from donation_gateway.services.payment_client import TokenGrant

logger = structlog.get_logger(__name__)


def token_expiry(token: str) -> Optional[float]:
    """Read the `exp` claim without verifying the signature"""
    try:
        claims = jwt.get_unverified_claims(token)
    except (JWTError, AttributeError, TypeError):
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return float(exp)
    return None


class TokenCache:
    """
    Holds one bearer token and refreshes it lazily

    A token is reused while its expiry is more than `refresh_margin` seconds
    away. Concurrent callers during a refresh wait on a lock and reuse the
    token the first caller fetched.
    """

    def __init__(
        self,
        fetch_token: Callable[[], Awaitable[TokenGrant]],
        refresh_margin: float = 3600,
        default_ttl: float = 25 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch_token = fetch_token
        self.refresh_margin = refresh_margin
        self.default_ttl = default_ttl
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _usable(self) -> bool:
        return (
            self._token is not None
            and self._expires_at is not None
            and self._expires_at > self._clock() + self.refresh_margin
        )

    @property
    def has_valid_token(self) -> bool:
        return self._token is not None and self._expires_at is not None and self._expires_at > self._clock()

    @property
    def expires_at(self) -> Optional[float]:
        return self._expires_at

    async def get_token(self) -> str:
        """Return a usable token, fetching a fresh one if needed"""
        if self._usable():
            logger.debug("Using cached processor token")
            return self._token

        async with self._lock:
            if self._usable():
                return self._token

            grant = await self._fetch_token()
            expires_at = token_expiry(grant.token)
            if expires_at is None:
                expires_at = self._clock() + self.default_ttl
                logger.info("Token expiry not readable, using default lifetime", ttl_seconds=self.default_ttl)

            self._token = grant.token
            self._expires_at = expires_at
            logger.info("Processor token cached", expires_at=expires_at)
            return self._token

    def invalidate(self):
        """Drop the cached token so the next call fetches a new one"""
        self._token = None
        self._expires_at = None
