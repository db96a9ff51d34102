"""HTTP client for the calls API: session initiation, completion log, history."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from callmate.call.errors import AuthExpiredError, GatewayError, InitiationError
from callmate.call.state import CallerType, CallLogEntry, CallSession

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 15.0


class CallGateway:
    """Session Initiation Gateway and Completion Logger.

    Every call takes the bearer credential explicitly so the caller decides
    when to refresh and retry. HTTP 401 always surfaces as AuthExpiredError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def initiate(
        self, booking_id: str, caller_type: CallerType, credential: str
    ) -> CallSession:
        body = await self._request(
            "POST",
            "/api/calls/initiate",
            credential,
            json={"bookingId": booking_id, "callerType": str(caller_type)},
        )
        _raise_for_error(body)
        try:
            session = CallSession.from_wire(body["data"])
        except (KeyError, TypeError) as exc:
            raise GatewayError(f"Malformed initiation response: {exc}") from exc
        logger.info(
            "Call session for booking %s: %s -> %s",
            session.booking_id,
            session.caller_id,
            session.receiver_id,
        )
        return session

    async def log_call(
        self,
        booking_id: str,
        duration: int,
        caller_type: CallerType,
        status: str,
        credential: str,
    ) -> None:
        body = await self._request(
            "POST",
            "/api/calls/log",
            credential,
            json={
                "bookingId": booking_id,
                "duration": duration,
                "callerType": str(caller_type),
                "status": status,
            },
        )
        if body.get("status") != "success":
            raise GatewayError(body.get("message") or "Call log rejected")
        logger.info("Logged %ds call for booking %s", duration, booking_id)

    async def fetch_history(
        self, booking_id: str, credential: str
    ) -> list[CallLogEntry]:
        body = await self._request(
            "GET", f"/api/calls/history/{booking_id}", credential
        )
        _raise_for_error(body)
        data = body.get("data") or {}
        calls = data.get("calls") if isinstance(data, dict) else None
        if not isinstance(calls, list):
            raise GatewayError("Malformed call history response")
        return [CallLogEntry.from_wire(row) for row in calls if isinstance(row, dict)]

    async def _request(
        self,
        method: str,
        path: str,
        credential: str,
        *,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {"Authorization": f"Bearer {credential}"}
        try:
            async with self._session.request(
                method, url, json=json, headers=headers, timeout=self._timeout
            ) as resp:
                if resp.status == 401:
                    raise AuthExpiredError(f"{method} {path}: credential rejected")
                try:
                    body = await resp.json(content_type=None)
                except ValueError as exc:
                    raise GatewayError(
                        f"{method} {path}: unreadable response (HTTP {resp.status})"
                    ) from exc
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise GatewayError(f"{method} {path}: {exc}") from exc
        if not isinstance(body, dict):
            raise GatewayError(f"{method} {path}: unexpected response body")
        logger.debug("%s %s -> HTTP %d", method, path, resp.status)
        return body


def _raise_for_error(body: dict[str, Any]) -> None:
    if body.get("status") == "success":
        return
    code = body.get("errorCode")
    raise InitiationError(
        code=str(code) if code else None, message=body.get("message")
    )
