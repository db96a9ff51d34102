"""Call session controller: the lifecycle state machine for one user session.

States: idle → calling → connecting → connected → ended → idle on the caller
side, idle → ringing → connecting → connected → ended → idle on the receiver
side. ``ended`` always settles back to ``idle`` on its own.

All mutation happens on the event loop through entry points, signaling events
(``_dispatch``) and timer callbacks. Every coroutine re-checks the attempt id
and status after each await, because the status may have moved on while it
was suspended.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from callmate.api.gateway import CallGateway
from callmate.auth.tokens import TokenManager
from callmate.call.errors import (
    ACCEPT_FAILED_MESSAGE,
    SESSION_EXPIRED_CODE,
    SESSION_EXPIRED_MESSAGE,
    TIMEOUT_CODE,
    TIMEOUT_MESSAGE,
    TRANSPORT_MESSAGE,
    AuthExpiredError,
    CallInProgressError,
    ErrorKind,
    GatewayError,
    InitiationError,
    SessionExpiredError,
    SignalingError,
    map_call_error,
)
from callmate.call.state import (
    SUPERVISED_STATUSES,
    CallerType,
    CallSession,
    CallSnapshot,
    CallStatus,
    ErrorState,
)
from callmate.call.timers import (
    CONNECTION_TIMEOUT,
    TICK_INTERVAL,
    ConnectionTimeout,
    DurationCounter,
)
from callmate.signaling.events import (
    CallEnded,
    CallRejected,
    EventKind,
    IncomingCall,
    SignalEvent,
    SignalingFailure,
)
from callmate.signaling.transport import SignalingTransport

logger = logging.getLogger(__name__)

Listener = Callable[[CallSnapshot], None]


@dataclasses.dataclass(frozen=True)
class CallTimings:
    connection_timeout: float = CONNECTION_TIMEOUT
    success_settle: float = 2.0
    error_settle: float = 3.0
    error_display: float = 3.0
    tick: float = TICK_INTERVAL


class CallController:
    """Owns the call status and coordinates gateway, transport and tokens.

    One instance per signed-in user: ``start`` joins the signaling channel,
    ``close`` tears everything down on logout.
    """

    def __init__(
        self,
        *,
        transport: SignalingTransport,
        gateway: CallGateway,
        tokens: TokenManager,
        role: CallerType,
        loop: asyncio.AbstractEventLoop,
        timings: CallTimings = CallTimings(),
        on_session_expired: Callable[[], None] | None = None,
    ) -> None:
        self._transport = transport
        self._gateway = gateway
        self._tokens = tokens
        self._role = CallerType(role)
        self._loop = loop
        self._timings = timings
        self._on_session_expired = on_session_expired

        self._status = CallStatus.IDLE
        self._incoming: CallSession | None = None
        self._current: CallSession | None = None
        self._error: ErrorState | None = None
        self._last_duration = 0
        self._caller_type = self._role
        # Bumped whenever a new attempt starts; timers and resumptions
        # carrying an older value must not touch state.
        self._attempt = 0

        self._timeout = ConnectionTimeout(
            loop, self._on_connection_timeout, timings.connection_timeout
        )
        self._counter = DurationCounter(loop, self._on_tick, timings.tick)
        self._settle_handle: asyncio.TimerHandle | None = None
        self._error_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._listeners: list[Listener] = []
        self._handlers: dict[EventKind, Callable[[Any], None]] = {
            EventKind.INCOMING: self._on_incoming,
            EventKind.ACCEPTED: self._on_accepted,
            EventKind.REJECTED: self._on_rejected,
            EventKind.ENDED: self._on_ended,
            EventKind.CONNECTED: self._on_connected,
            EventKind.ERROR: self._on_error,
        }

    # -- observable state -------------------------------------------------

    @property
    def status(self) -> CallStatus:
        return self._status

    @property
    def incoming_call(self) -> CallSession | None:
        return self._incoming

    @property
    def current_call(self) -> CallSession | None:
        return self._current

    @property
    def call_duration(self) -> int:
        return self._counter.seconds

    @property
    def last_duration(self) -> int:
        return self._last_duration

    @property
    def error(self) -> ErrorState | None:
        return self._error

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def timeout_armed(self) -> bool:
        return self._timeout.armed

    def snapshot(self) -> CallSnapshot:
        return CallSnapshot(
            status=self._status,
            incoming_call=self._incoming,
            current_call=self._current,
            call_duration=self._counter.seconds,
            last_duration=self._last_duration,
            error=self._error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a snapshot after every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- session lifecycle ------------------------------------------------

    async def start(self, user_id: str) -> None:
        """Join the signaling channel as ``user_id``."""
        token = await self._tokens.get_token()
        if token is None:
            raise SessionExpiredError()
        self._transport.on(self._dispatch)
        await self._transport.initialize(user_id, token)
        logger.info("Call controller started for %s (%s)", user_id, self._role)

    async def close(self) -> None:
        """Cancel every timer and task and leave the signaling channel."""
        self._attempt += 1
        self._timeout.cancel()
        self._counter.stop()
        self._cancel_settle()
        self._cancel_error_timer()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._incoming = None
        self._current = None
        self._error = None
        self._last_duration = 0
        self._transition(CallStatus.IDLE)
        await self._transport.disconnect()
        logger.info("Call controller closed")

    # -- entry points -----------------------------------------------------

    async def initiate_call(
        self, booking_id: str, caller_type: CallerType | str
    ) -> None:
        """Start an outgoing call for a booking.

        Raises CallInProgressError when a call is already active and
        ValueError for an unknown caller type. Every other outcome is
        reported through ``status`` and ``error``.
        """
        if self._status == CallStatus.ENDED:
            self._settle()
        if self._status != CallStatus.IDLE:
            raise CallInProgressError(
                f"Cannot start a call while another is {self._status}"
            )
        caller_type = CallerType(caller_type)

        self._cancel_error_timer()
        self._error = None
        self._attempt += 1
        attempt = self._attempt
        self._caller_type = caller_type
        self._transition(CallStatus.CALLING)
        logger.info("Attempt %d: calling for booking %s", attempt, booking_id)

        try:
            session = await self._request_session(attempt, booking_id, caller_type)
        except SessionExpiredError:
            self._session_expired(attempt)
            return
        except InitiationError as exc:
            logger.warning("Call initiation refused: %s (%s)", exc, exc.code)
            if self._is_current(attempt, CallStatus.CALLING):
                self._fail(
                    ErrorState(
                        message=map_call_error(exc.code),
                        kind=ErrorKind.PRECONDITION,
                        code=exc.code,
                    )
                )
            return
        except GatewayError as exc:
            logger.warning("Call initiation failed: %s", exc)
            if self._is_current(attempt, CallStatus.CALLING):
                self._fail(
                    ErrorState(message=map_call_error(None), kind=ErrorKind.TRANSPORT)
                )
            return

        if session is None or not self._is_current(attempt, CallStatus.CALLING):
            logger.info("Attempt %d superseded before signaling", attempt)
            return

        self._current = session
        self._timeout.arm(attempt)
        self._notify()

        try:
            await self._transport.start_call(session)
        except SignalingError as exc:
            logger.warning("Signaling refused call: %s (%s)", exc, exc.code)
            if self._attempt == attempt and self._status in SUPERVISED_STATUSES:
                self._fail(
                    ErrorState(
                        message=(
                            map_call_error(exc.code) if exc.code else TRANSPORT_MESSAGE
                        ),
                        kind=ErrorKind.TRANSPORT,
                        code=exc.code,
                    )
                )

    async def accept_call(self) -> None:
        if self._status != CallStatus.RINGING:
            logger.debug("accept_call ignored while %s", self._status)
            return
        incoming = self._incoming
        self._cancel_error_timer()
        self._error = None
        self._attempt += 1
        attempt = self._attempt

        try:
            await self._transport.accept_call()
        except SignalingError as exc:
            logger.warning("Failed to accept call: %s", exc)
            if self._is_current(attempt, CallStatus.RINGING):
                self._incoming = None
                self._show_error(
                    ErrorState(message=ACCEPT_FAILED_MESSAGE, kind=ErrorKind.TRANSPORT)
                )
                self._transition(CallStatus.IDLE)
                await self._release_transport()
            return

        if not self._is_current(attempt, CallStatus.RINGING):
            logger.info("Incoming call went away while accepting")
            return
        self._current = incoming
        self._incoming = None
        self._transition(CallStatus.CONNECTING)

    async def reject_call(self) -> None:
        if self._status != CallStatus.RINGING:
            logger.debug("reject_call ignored while %s", self._status)
            return
        self._incoming = None
        self._transition(CallStatus.IDLE)
        try:
            await self._transport.reject_call()
        except SignalingError as exc:
            logger.warning("Failed to notify rejection: %s", exc)

    async def end_call(self) -> None:
        """Hang up from any non-idle state.

        The status moves to ``ended`` before any I/O, so a local hang-up wins
        over an attempt that is still connecting.
        """
        status = self._status
        if status in (CallStatus.IDLE, CallStatus.ENDED):
            logger.debug("end_call ignored while %s", status)
            return
        if status == CallStatus.RINGING:
            await self.reject_call()
            return

        session = self._current
        caller_type = self._caller_type
        self._transition(CallStatus.ENDED)
        duration = self._last_duration
        self._schedule_settle(self._timings.success_settle)

        try:
            await self._transport.end_call()
        except SignalingError as exc:
            logger.warning("Error ending call: %s", exc)

        if status == CallStatus.CONNECTED and session is not None:
            await self._log_completion(session, duration, caller_type)

    # -- signaling events -------------------------------------------------

    def _dispatch(self, event: SignalEvent) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning("No handler for %s", event.kind)
            return
        logger.debug("Event %s while %s", event.kind, self._status)
        handler(event)

    def _on_incoming(self, event: IncomingCall) -> None:
        if self._status == CallStatus.ENDED:
            self._settle()
        if self._status != CallStatus.IDLE:
            logger.info(
                "Busy (%s), ignoring incoming call for booking %s",
                self._status,
                event.session.booking_id,
            )
            return
        self._cancel_error_timer()
        self._error = None
        self._incoming = event.session
        self._caller_type = self._role
        self._transition(CallStatus.RINGING)

    def _on_accepted(self, _event: Any) -> None:
        if self._status != CallStatus.CALLING:
            logger.debug("Accepted ignored while %s", self._status)
            return
        self._transition(CallStatus.CONNECTING)

    def _on_rejected(self, event: CallRejected) -> None:
        if self._status not in SUPERVISED_STATUSES:
            logger.debug("Rejected ignored while %s", self._status)
            return
        self._fail(
            ErrorState(
                message=f"Call rejected: {event.reason}", kind=ErrorKind.REJECTED
            )
        )

    def _on_ended(self, event: CallEnded) -> None:
        if self._status in (CallStatus.IDLE, CallStatus.ENDED):
            logger.debug("Remote end ignored while %s", self._status)
            return
        was_connected = self._status == CallStatus.CONNECTED
        self._incoming = None
        self._transition(CallStatus.ENDED)
        if was_connected and event.duration:
            self._last_duration = event.duration
            self._notify()
        logger.info(
            "Call ended by %s after %ds", event.ended_by or "peer", self._last_duration
        )
        self._schedule_settle(self._timings.success_settle)

    def _on_connected(self, _event: Any) -> None:
        if self._status not in SUPERVISED_STATUSES:
            logger.debug("Connected ignored while %s", self._status)
            return
        self._transition(CallStatus.CONNECTED)

    def _on_error(self, event: SignalingFailure) -> None:
        if self._status in (CallStatus.IDLE, CallStatus.ENDED):
            logger.debug(
                "Signaling error ignored while %s: %s", self._status, event.message
            )
            return
        logger.warning("Signaling error: %s", event.message)
        self._incoming = None
        self._fail(ErrorState(message=TRANSPORT_MESSAGE, kind=ErrorKind.TRANSPORT))

    # -- timers -----------------------------------------------------------

    def _on_connection_timeout(self, attempt: int) -> None:
        if not self._is_current(attempt, *SUPERVISED_STATUSES):
            logger.debug("Stale timeout for attempt %d ignored", attempt)
            return
        self._fail(
            ErrorState(
                message=TIMEOUT_MESSAGE, kind=ErrorKind.TIMEOUT, code=TIMEOUT_CODE
            )
        )
        self._spawn(self._abort_transport())

    def _on_tick(self, _seconds: int) -> None:
        self._notify()

    def _schedule_settle(self, delay: float) -> None:
        self._cancel_settle()
        self._settle_handle = self._loop.call_later(delay, self._settle)

    def _cancel_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
            self._settle_handle = None

    def _settle(self) -> None:
        self._cancel_settle()
        if self._status != CallStatus.ENDED:
            return
        self._incoming = None
        self._current = None
        self._error = None
        self._last_duration = 0
        self._transition(CallStatus.IDLE)

    def _show_error(self, error: ErrorState) -> None:
        """Surface an error at idle and clear it after the display delay."""
        self._error = error
        self._cancel_error_timer()
        self._error_handle = self._loop.call_later(
            self._timings.error_display, self._clear_error, error
        )

    def _clear_error(self, error: ErrorState) -> None:
        self._error_handle = None
        if self._error is error:
            self._error = None
            self._notify()

    def _cancel_error_timer(self) -> None:
        if self._error_handle is not None:
            self._error_handle.cancel()
            self._error_handle = None

    # -- internals --------------------------------------------------------

    def _transition(self, status: CallStatus) -> None:
        """Single point where the status changes and timer invariants hold."""
        previous = self._status
        self._status = status

        if status in SUPERVISED_STATUSES:
            if not self._timeout.armed:
                self._timeout.arm(self._attempt)
        else:
            self._timeout.cancel()

        if previous == CallStatus.CONNECTED and status != CallStatus.CONNECTED:
            self._last_duration = self._counter.stop()
        elif status == CallStatus.CONNECTED and previous != CallStatus.CONNECTED:
            self._last_duration = 0
            self._counter.start()

        if status != CallStatus.ENDED:
            self._cancel_settle()

        if previous != status:
            logger.info("Call status %s -> %s", previous, status)
        self._notify()

    def _fail(self, error: ErrorState) -> None:
        """Terminal failure: ended with the error shown, then idle."""
        self._cancel_error_timer()
        self._error = error
        self._transition(CallStatus.ENDED)
        self._schedule_settle(self._timings.error_settle)

    def _is_current(self, attempt: int, *statuses: CallStatus) -> bool:
        return self._attempt == attempt and self._status in statuses

    async def _request_session(
        self, attempt: int, booking_id: str, caller_type: CallerType
    ) -> CallSession | None:
        """Create the call session, refreshing the credential at most once.

        Returns None when the attempt was superseded while suspended.
        """
        token = await self._tokens.get_token()
        if token is None:
            raise SessionExpiredError()
        if not self._is_current(attempt, CallStatus.CALLING):
            return None
        try:
            return await self._gateway.initiate(booking_id, caller_type, token)
        except AuthExpiredError:
            logger.info("Credential rejected during initiation, refreshing once")

        if not self._is_current(attempt, CallStatus.CALLING):
            return None
        token = await self._tokens.force_refresh()
        if token is None:
            raise SessionExpiredError()
        if not self._is_current(attempt, CallStatus.CALLING):
            return None
        try:
            return await self._gateway.initiate(booking_id, caller_type, token)
        except GatewayError as exc:
            logger.info("Retry after refresh failed: %s", exc)
            raise SessionExpiredError() from exc

    def _session_expired(self, attempt: int) -> None:
        logger.info("Session expired during call initiation")
        if self._on_session_expired is not None:
            self._on_session_expired()
        if self._is_current(attempt, CallStatus.CALLING):
            self._fail(
                ErrorState(
                    message=SESSION_EXPIRED_MESSAGE,
                    kind=ErrorKind.AUTH_EXPIRY,
                    code=SESSION_EXPIRED_CODE,
                    handled=True,
                )
            )

    async def _log_completion(
        self, session: CallSession, duration: int, caller_type: CallerType
    ) -> None:
        """Best-effort completion record; never raises."""
        token = await self._tokens.get_token()
        if token is None:
            logger.info("No credential, skipping call log")
            return
        try:
            await self._gateway.log_call(
                session.booking_id, duration, caller_type, "completed", token
            )
        except AuthExpiredError:
            # Refresh for the next request; this log is not retried.
            logger.info("Call log rejected, refreshing credential")
            await self._tokens.force_refresh()
        except GatewayError as exc:
            logger.warning("Error logging call (non-critical): %s", exc)

    async def _abort_transport(self) -> None:
        try:
            await self._transport.end_call()
        except SignalingError as exc:
            logger.debug("Ignoring abort failure after timeout: %s", exc)

    async def _release_transport(self) -> None:
        """Tell the peer we are not taking the call; the channel may be gone."""
        try:
            await self._transport.reject_call("failed")
        except SignalingError as exc:
            logger.debug("Ignoring release failure after accept error: %s", exc)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Call state listener failed")
