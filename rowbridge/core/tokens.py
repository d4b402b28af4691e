"""Elevated credential lifecycle for datastore calls."""

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from rowbridge.core.config import settings
from rowbridge.core.errors import AuthenticationFailed, DatastoreError
from rowbridge.core.metrics import metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenState(str, Enum):
    EMPTY = "empty"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"


def classify_token(
    value: Optional[str], expires_at: Optional[float], now: float, buffer: float
) -> TokenState:
    """Single transition function for the token state machine."""
    if not value or expires_at is None:
        return TokenState.EMPTY
    if now >= expires_at:
        return TokenState.EXPIRED
    if now >= expires_at - buffer:
        return TokenState.NEAR_EXPIRY
    return TokenState.VALID


class CredentialManager:
    """
    Caches the elevated token and refreshes it when needed.

    One instance is owned by whoever drives an import; nothing here is module
    state. Concurrent callers that need a refresh share one in-flight
    authentication task, and a refresh asked for within
    ``min_refresh_interval`` of the previous one reuses its token.

    Args:
        authenticate: ``(username, password) -> token`` coroutine
        username: Datastore account name
        password: Datastore account password
        ttl: Lifetime assumed for a fresh token, in seconds
        buffer: Seconds before expiry at which the token counts as near expiry
        min_refresh_interval: Coalescing window for refresh requests
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        authenticate: Callable[[str, str], Awaitable[str]],
        username: str,
        password: str,
        ttl: Optional[float] = None,
        buffer: Optional[float] = None,
        min_refresh_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._authenticate = authenticate
        self._username = username
        self._password = password
        self.ttl = ttl if ttl is not None else settings.token_ttl_seconds
        self.buffer = buffer if buffer is not None else settings.token_refresh_buffer_seconds
        self.min_refresh_interval = (
            min_refresh_interval
            if min_refresh_interval is not None
            else settings.token_min_refresh_interval
        )
        self._clock = clock
        self._value: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._refreshed_at: Optional[float] = None
        self._inflight: Optional[asyncio.Future] = None
        self.refresh_count = 0

    def state(self) -> TokenState:
        return classify_token(self._value, self._expires_at, self._clock(), self.buffer)

    async def get_token(self) -> str:
        """Return a usable token, refreshing only when none is cached or it expired."""
        if self.state() in (TokenState.VALID, TokenState.NEAR_EXPIRY):
            return self._value
        return await self._refresh()

    async def ensure_fresh(self) -> str:
        """Refresh proactively unless the cached token is comfortably valid."""
        if self.state() == TokenState.VALID:
            return self._value
        return await self._refresh()

    def invalidate(self, stale: Optional[str] = None) -> None:
        """Drop the cached token.

        When ``stale`` is given and another caller already replaced it, the
        newer token is kept.
        """
        if stale is not None and stale != self._value:
            return
        self._value = None
        self._expires_at = None

    async def call_with_refresh(self, fn: Callable[[str], Awaitable[T]]) -> T:
        """Run ``fn(token)``; on a 401 invalidate, refresh and retry exactly once."""
        token = await self.get_token()
        try:
            return await fn(token)
        except DatastoreError as e:
            if e.upstream_status != 401:
                raise
            logger.info("Elevated token rejected, refreshing and retrying once")
            self.invalidate(token)

        token = await self.get_token()
        try:
            return await fn(token)
        except DatastoreError as e:
            if e.upstream_status == 401:
                self.invalidate(token)
                raise AuthenticationFailed(
                    "Datastore rejected a freshly issued token", upstream_status=401
                ) from e
            raise

    def status(self) -> dict:
        """Debug view of the credential; the token itself is masked."""
        now = self._clock()
        return {
            "state": self.state().value,
            "expires_in": round(self._expires_at - now, 1) if self._expires_at else None,
            "token": f"{self._value[:6]}..." if self._value else None,
            "refresh_count": self.refresh_count,
            "configured": bool(self._username and self._password),
        }

    async def _refresh(self) -> str:
        if self._inflight is not None and not self._inflight.done():
            return await asyncio.shield(self._inflight)

        if (
            self._refreshed_at is not None
            and self._clock() - self._refreshed_at < self.min_refresh_interval
            and self.state() in (TokenState.VALID, TokenState.NEAR_EXPIRY)
        ):
            return self._value

        self._inflight = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._inflight)

    async def _do_refresh(self) -> str:
        if not self._username or not self._password:
            metrics.record_token_refresh("not_configured")
            raise AuthenticationFailed(
                "Datastore username and password are not configured"
            )

        try:
            token = await self._authenticate(self._username, self._password)
        except AuthenticationFailed:
            self.invalidate()
            metrics.record_token_refresh("failed")
            raise
        except DatastoreError as e:
            self.invalidate()
            metrics.record_token_refresh("failed")
            raise AuthenticationFailed(
                f"Authentication request failed: {e.message}",
                upstream_status=e.upstream_status,
            ) from e

        now = self._clock()
        self._value = token
        self._expires_at = now + self.ttl
        self._refreshed_at = now
        self.refresh_count += 1
        metrics.record_token_refresh("success")
        logger.info(
            "Elevated token refreshed",
            extra={"refresh_count": self.refresh_count, "ttl": self.ttl},
        )
        return token
