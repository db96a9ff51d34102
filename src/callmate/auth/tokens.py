"""Bearer credential storage and refresh."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

import aiohttp
import jwt

logger = logging.getLogger(__name__)

# Refresh the access token when it expires within this many seconds
REFRESH_BUFFER = 5 * 60.0


def _parse_expiry(value: Any) -> float:
    """Accept epoch milliseconds or an ISO-8601 timestamp."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value) / 1000.0
    return datetime.fromisoformat(str(value)).timestamp()


@dataclasses.dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: float
    refresh_expires_at: float

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> TokenPair:
        """Build from the ``data`` object of a login or refresh response."""
        return cls(
            access_token=str(data["accessToken"]),
            refresh_token=str(data["refreshToken"]),
            access_expires_at=_parse_expiry(data["accessTokenExpiresAt"]),
            refresh_expires_at=_parse_expiry(data["refreshTokenExpiresAt"]),
        )

    @classmethod
    def from_jwt(cls, token: str) -> TokenPair:
        """Wrap a bare legacy JWT with no refresh token.

        The ``exp`` claim bounds both expiries. Raises ValueError when the
        token cannot be decoded or carries no numeric ``exp``.
        """
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError as exc:
            raise ValueError(f"Failed to decode JWT: {exc}") from exc
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise ValueError("Invalid JWT: missing or invalid expiration")
        return cls(
            access_token=token,
            refresh_token="",
            access_expires_at=float(exp),
            refresh_expires_at=float(exp),
        )


class TokenManager:
    """Holds the caller's token pair and renews it against the auth API.

    Concurrent refreshes share one in-flight request. Any refresh failure
    clears the stored pair, after which ``get_token`` returns None until a new
    pair is stored.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession,
        clock: Callable[[], float] = time.time,
        buffer: float = REFRESH_BUFFER,
    ) -> None:
        self._refresh_url = f"{base_url.rstrip('/')}/api/auth/refresh"
        self._session = session
        self._clock = clock
        self._buffer = buffer
        self._pair: TokenPair | None = None
        self._refresh_task: asyncio.Task[str | None] | None = None

    @property
    def pair(self) -> TokenPair | None:
        return self._pair

    def store(self, pair: TokenPair) -> None:
        self._pair = pair

    def clear(self) -> None:
        self._pair = None

    async def get_token(self) -> str | None:
        """Return a usable access token, refreshing it when close to expiry."""
        pair = self._pair
        if pair is None:
            return None
        now = self._clock()
        if pair.access_expires_at <= now and pair.refresh_expires_at <= now:
            logger.info("Refresh token expired, clearing credentials")
            self.clear()
            return None
        if pair.access_expires_at - now < self._buffer:
            return await self.force_refresh()
        return pair.access_token

    async def force_refresh(self) -> str | None:
        """Refresh now, joining a refresh that is already in flight."""
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._perform_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _perform_refresh(self) -> str | None:
        pair = self._pair
        if pair is None or not pair.refresh_token:
            logger.info("No refresh token available")
            self.clear()
            return None
        if pair.refresh_expires_at <= self._clock():
            logger.info("Refresh token expired, clearing credentials")
            self.clear()
            return None

        try:
            async with self._session.post(
                self._refresh_url, json={"refreshToken": pair.refresh_token}
            ) as resp:
                if resp.status != 200:
                    logger.warning("Token refresh rejected (HTTP %d)", resp.status)
                    self.clear()
                    return None
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            logger.warning("Token refresh failed: %s", exc)
            self.clear()
            return None

        try:
            new_pair = TokenPair.from_wire(body["data"])
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Invalid refresh response: %s", exc)
            self.clear()
            return None

        self._pair = new_pair
        logger.info("Access token refreshed")
        return new_pair.access_token
