"""Signaling transport contract and its aiohttp websocket implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import aiohttp

from callmate.call.errors import SignalingError
from callmate.call.state import CallSession
from callmate.signaling.events import (
    CallEnded,
    CallRejected,
    EventHandler,
    IncomingCall,
    SignalEvent,
    SignalingFailure,
)
from callmate.signaling.frames import (
    CALL_ACCEPT,
    CALL_END,
    CALL_INITIATE,
    CALL_REJECT,
    JOIN,
    FrameError,
    decode_frame,
    encode_frame,
    frame_to_event,
)

logger = logging.getLogger(__name__)

DEFAULT_ACK_TIMEOUT = 10.0
RECONNECT_ATTEMPTS = 5
RECONNECT_DELAY = 1.0
CHANNEL_LOST_MESSAGE = "Call connection lost. Please try again."

CredentialSource = Callable[[], Awaitable[str | None]]


class SignalingTransport(Protocol):
    """Real-time call-control channel consumed by the call controller.

    Remote state changes reach the controller only through the handler
    registered with ``on``; the controller never polls.
    """

    async def initialize(self, identity: str, credential: str) -> None: ...

    def on(self, handler: EventHandler) -> None: ...

    async def start_call(self, session: CallSession) -> None: ...

    async def accept_call(self) -> None: ...

    async def reject_call(self, reason: str = "declined") -> None: ...

    async def end_call(self) -> None: ...

    async def disconnect(self) -> None: ...


class WebSocketSignaling:
    """JSON-over-websocket signaling client.

    Commands that need confirmation (``join``, ``call:initiate``) carry a
    ``ref`` and wait for the matching ``ack`` frame, bounded by
    ``ack_timeout`` seconds.

    When the channel drops without ``disconnect`` being called, the client
    reconnects and rejoins up to ``reconnect_attempts`` times, waiting
    ``reconnect_delay`` seconds before each try. ``credentials`` supplies a
    fresh bearer token for each try; without it the token given to
    ``initialize`` is reused.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession,
        ack_timeout: float = DEFAULT_ACK_TIMEOUT,
        reconnect_attempts: int = RECONNECT_ATTEMPTS,
        reconnect_delay: float = RECONNECT_DELAY,
        credentials: CredentialSource | None = None,
    ) -> None:
        self._url = url
        self._session = session
        self._ack_timeout = ack_timeout
        self._reconnect_attempts = reconnect_attempts
        self._reconnect_delay = reconnect_delay
        self._credentials = credentials
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._reconnector: asyncio.Task[None] | None = None
        self._handler: EventHandler | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._next_ref = 0
        self._user_id: str | None = None
        self._credential: str | None = None
        # The one call this client is signaling for, outgoing or incoming
        self._current: CallSession | None = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def reconnecting(self) -> bool:
        return self._reconnector is not None

    async def initialize(self, identity: str, credential: str) -> None:
        """Open the websocket and join the user's signaling room.

        Returns only once the server acknowledged the join.
        """
        if self.connected:
            return
        self._closing = False
        self._user_id = identity
        self._credential = credential
        try:
            await self._open(identity, credential)
        except SignalingError:
            await self.disconnect()
            raise
        logger.info("Signaling channel ready for user %s", identity)

    def on(self, handler: EventHandler) -> None:
        self._handler = handler

    async def start_call(self, session: CallSession) -> None:
        self._current = session
        try:
            ack = await self._request(
                CALL_INITIATE,
                {"bookingId": session.booking_id, "to": session.receiver_id},
            )
        except SignalingError:
            self._current = None
            raise
        if ack.get("status", "success") != "success":
            self._current = None
            raise SignalingError(
                ack.get("message") or "Failed to start call",
                code=ack.get("errorCode"),
            )
        logger.info("Call for booking %s started", session.booking_id)

    async def accept_call(self) -> None:
        if self._current is None:
            raise SignalingError("No incoming call to accept")
        await self._send(
            CALL_ACCEPT,
            {"bookingId": self._current.booking_id, "receiverId": self._user_id},
        )

    async def reject_call(self, reason: str = "declined") -> None:
        call = self._current
        if call is None:
            return
        self._current = None
        await self._send(CALL_REJECT, {"bookingId": call.booking_id, "reason": reason})

    async def end_call(self) -> None:
        call = self._current
        if call is None:
            return
        self._current = None
        await self._send(
            CALL_END, {"bookingId": call.booking_id, "userId": self._user_id}
        )

    async def disconnect(self) -> None:
        self._closing = True
        self._current = None
        if self._reconnector is not None:
            self._reconnector.cancel()
            self._reconnector = None
        await self._discard()
        logger.info("Signaling channel closed")

    async def _open(self, identity: str, credential: str) -> None:
        """Connect and join; the caller cleans up when this raises."""
        try:
            ws = await self._session.ws_connect(
                self._url,
                headers={"Authorization": f"Bearer {credential}"},
                heartbeat=30.0,
            )
        except (aiohttp.ClientError, OSError) as exc:
            raise SignalingError(f"Unable to reach call service: {exc}") from exc
        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop(ws))
        ack = await self._request(JOIN, {"userId": identity})
        if ack.get("status", "success") != "success":
            raise SignalingError(
                ack.get("message") or "Call service refused the connection",
                code=ack.get("errorCode"),
            )

    async def _discard(self) -> None:
        """Close the socket and stop its reader without side effects."""
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        self._fail_pending("Signaling channel closed")

    async def _reconnect(self) -> None:
        attempts = self._reconnect_attempts
        try:
            for attempt in range(1, attempts + 1):
                await asyncio.sleep(self._reconnect_delay)
                if self._closing or self._user_id is None:
                    return
                credential = self._credential
                if self._credentials is not None:
                    credential = await self._credentials()
                if credential is None:
                    logger.warning("No credential available, not reconnecting")
                    return
                try:
                    await self._open(self._user_id, credential)
                except SignalingError as exc:
                    logger.warning(
                        "Reconnect attempt %d/%d failed: %s", attempt, attempts, exc
                    )
                    await self._discard()
                    continue
                self._credential = credential
                logger.info("Signaling channel restored after %d attempt(s)", attempt)
                return
            logger.error("Giving up on signaling channel after %d attempts", attempts)
        finally:
            if self._reconnector is asyncio.current_task():
                self._reconnector = None

    async def _send(
        self, event: str, data: dict[str, Any], *, ref: int | None = None
    ) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise SignalingError("Not connected to call service.")
        try:
            await ws.send_str(encode_frame(event, data, ref=ref))
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise SignalingError(f"Failed to send {event}: {exc}") from exc
        logger.debug("Sent %s (ref=%s)", event, ref)

    async def _request(self, event: str, data: dict[str, Any]) -> dict[str, Any]:
        self._next_ref += 1
        ref = self._next_ref
        future: asyncio.Future[dict[str, Any]] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[ref] = future
        try:
            await self._send(event, data, ref=ref)
            return await asyncio.wait_for(future, self._ack_timeout)
        except TimeoutError:
            raise SignalingError(f"{event} was not acknowledged") from None
        finally:
            self._pending.pop(ref, None)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Signaling channel error: %s", ws.exception())
                    break
        finally:
            self._on_channel_lost(ws)

    def _handle_text(self, text: str) -> None:
        try:
            frame = decode_frame(text)
        except FrameError as exc:
            logger.warning("Dropping malformed signaling frame: %s", exc)
            return

        if frame.is_ack:
            future = self._pending.get(frame.ref) if frame.ref is not None else None
            if future is not None and not future.done():
                future.set_result(frame.data)
            else:
                logger.debug("Ack for unknown ref %s", frame.ref)
            return

        try:
            event = frame_to_event(frame)
        except FrameError as exc:
            logger.warning("Dropping signaling frame: %s", exc)
            return
        if event is None:
            logger.debug("Ignoring %s frame", frame.event)
            return

        if isinstance(event, IncomingCall):
            # A second ring while a call is tracked belongs to a busy line
            if self._current is None:
                self._current = event.session
            else:
                logger.info(
                    "Busy with booking %s, not tracking booking %s",
                    self._current.booking_id,
                    event.session.booking_id,
                )
        elif isinstance(event, (CallRejected, CallEnded, SignalingFailure)):
            self._current = None
        self._emit(event)

    def _emit(self, event: SignalEvent) -> None:
        logger.info("Signaling event %s", event.kind)
        if self._handler is None:
            logger.warning("No handler registered, dropping %s", event.kind)
            return
        try:
            self._handler(event)
        except Exception:
            logger.exception("Signaling handler failed on %s", event.kind)

    def _on_channel_lost(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        if ws is not self._ws:
            return
        self._fail_pending("Signaling channel closed")
        if self._closing or self._reconnector is not None:
            return
        logger.warning("Signaling channel lost")
        if self._current is not None:
            self._current = None
            self._emit(SignalingFailure(message=CHANNEL_LOST_MESSAGE))
        if self._reconnect_attempts > 0 and self._user_id is not None:
            self._reconnector = asyncio.create_task(self._reconnect())

    def _fail_pending(self, reason: str) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(SignalingError(reason))
