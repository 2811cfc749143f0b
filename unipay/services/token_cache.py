"""
Access token cache with single-flight refresh.

Concurrent callers that miss the cache await one shared fetch, so a burst
of requests never triggers duplicate token calls. The cache is per adapter
instance and per process.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

from structlog import get_logger

from unipay.observability.metrics import metrics

logger = get_logger(__name__)

# Fetchers return (token, seconds the token may be reused for)
TokenFetcher = Callable[[], Awaitable[tuple[str, float]]]


class TokenCache:
    """Cached token plus expiry, refreshed through a single in-flight future."""

    def __init__(
        self,
        gateway: str,
        fetch: TokenFetcher,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self._fetch = fetch
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._inflight: asyncio.Future[str] | None = None

    @property
    def is_valid(self) -> bool:
        return self._token is not None and self._clock() < self._expires_at

    async def get(self) -> str:
        """Return the cached token, fetching it once if missing or expired."""
        if self._token is not None and self._clock() < self._expires_at:
            return self._token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())

        # Shield so one cancelled caller does not cancel the shared fetch
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> str:
        try:
            token, ttl = await self._fetch()
            metrics.record_token_fetch(self.gateway)
            self._token = token
            self._expires_at = self._clock() + max(ttl, 0.0)
            logger.debug("access_token_refreshed", gateway=self.gateway, ttl_seconds=ttl)
            return token
        finally:
            self._inflight = None

    def invalidate(self) -> None:
        """Drop the cached token so the next call refetches."""
        self._token = None
        self._expires_at = 0.0
