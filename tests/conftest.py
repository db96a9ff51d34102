"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable
from typing import Any

import pytest

from callmate.call.controller import CallController, CallTimings
from callmate.call.errors import SignalingError
from callmate.call.state import CallerType, CallLogEntry, CallSession
from callmate.signaling.events import EventHandler, SignalEvent

SESSION = CallSession(
    booking_id="booking-1",
    caller_id="user-1",
    caller_name="Asha",
    receiver_id="provider-9",
    receiver_name="Ravi Plumbing",
    service_name="Plumbing",
)

INCOMING = CallSession(
    booking_id="booking-2",
    caller_id="provider-9",
    caller_name="Ravi Plumbing",
    receiver_id="user-1",
    receiver_name="Asha",
    service_name="Plumbing",
)


# ---------------------------------------------------------------------------
# Virtual clock
# ---------------------------------------------------------------------------


class FakeTimerHandle:
    def __init__(
        self, when: float, seq: int, callback: Callable[..., None], args: tuple
    ) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualLoop:
    """Stands in for the event loop's timer API; time moves only on advance()."""

    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[FakeTimerHandle] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    def call_later(
        self, delay: float, callback: Callable[..., None], *args: Any
    ) -> FakeTimerHandle:
        handle = FakeTimerHandle(self.now + delay, next(self._seq), callback, args)
        self._timers.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        """Run every timer due within ``seconds``, in deadline order."""
        target = self.now + seconds
        while True:
            due = [
                h for h in self._timers if not h.cancelled() and h.when <= target
            ]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._timers.remove(handle)
            self.now = handle.when
            handle.callback(*handle.args)
        self.now = target
        self._timers = [h for h in self._timers if not h.cancelled()]

    @property
    def live_timers(self) -> int:
        return sum(1 for h in self._timers if not h.cancelled())


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class FakeSignaling:
    """Records commands and lets tests push events into the controller."""

    def __init__(self) -> None:
        self.handler: EventHandler | None = None
        self.commands: list[str] = []
        self.identity: str | None = None
        self.credential: str | None = None
        self.started: list[CallSession] = []
        self.fail: dict[str, SignalingError] = {}
        self.disconnected = False

    async def initialize(self, identity: str, credential: str) -> None:
        self.identity = identity
        self.credential = credential

    def on(self, handler: EventHandler) -> None:
        self.handler = handler

    async def start_call(self, session: CallSession) -> None:
        self._record("start_call")
        self.started.append(session)

    async def accept_call(self) -> None:
        self._record("accept_call")

    async def reject_call(self, reason: str = "declined") -> None:
        self._record("reject_call")

    async def end_call(self) -> None:
        self._record("end_call")

    async def disconnect(self) -> None:
        self.disconnected = True

    def emit(self, event: SignalEvent) -> None:
        assert self.handler is not None, "controller.start() not called"
        self.handler(event)

    def _record(self, command: str) -> None:
        self.commands.append(command)
        error = self.fail.get(command)
        if error is not None:
            raise error


class FakeGateway:
    """Scripted gateway: each initiate() pops the next result."""

    def __init__(self) -> None:
        self.initiate_results: list[CallSession | Exception] = []
        self.initiate_calls: list[tuple[str, CallerType, str]] = []
        self.logged: list[dict[str, Any]] = []
        self.log_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.history: list[CallLogEntry] = []
        self.history_error: Exception | None = None
        self.history_calls: list[tuple[str, str]] = []

    async def initiate(
        self, booking_id: str, caller_type: CallerType, credential: str
    ) -> CallSession:
        self.initiate_calls.append((booking_id, caller_type, credential))
        if self.gate is not None:
            await self.gate.wait()
        result: CallSession | Exception = SESSION
        if self.initiate_results:
            result = self.initiate_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def log_call(
        self,
        booking_id: str,
        duration: int,
        caller_type: CallerType,
        status: str,
        credential: str,
    ) -> None:
        self.logged.append(
            {
                "booking_id": booking_id,
                "duration": duration,
                "caller_type": caller_type,
                "status": status,
                "credential": credential,
            }
        )
        if self.log_error is not None:
            raise self.log_error

    async def fetch_history(
        self, booking_id: str, credential: str
    ) -> list[CallLogEntry]:
        self.history_calls.append((booking_id, credential))
        if self.history_error is not None:
            raise self.history_error
        return self.history


class FakeTokens:
    def __init__(self, token: str | None = "tok-1", refreshed: str | None = "tok-2"):
        self.token = token
        self.refreshed = refreshed
        self.refresh_calls = 0

    async def get_token(self) -> str | None:
        return self.token

    async def force_refresh(self) -> str | None:
        self.refresh_calls += 1
        self.token = self.refreshed
        return self.refreshed


# ---------------------------------------------------------------------------
# Controller fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def vloop() -> VirtualLoop:
    return VirtualLoop()


@pytest.fixture
def signaling() -> FakeSignaling:
    return FakeSignaling()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def tokens() -> FakeTokens:
    return FakeTokens()


@pytest.fixture
def expired_sessions() -> list[bool]:
    return []


@pytest.fixture
def controller(
    vloop: VirtualLoop,
    signaling: FakeSignaling,
    gateway: FakeGateway,
    tokens: FakeTokens,
    expired_sessions: list[bool],
) -> CallController:
    ctrl = CallController(
        transport=signaling,
        gateway=gateway,  # type: ignore[arg-type]
        tokens=tokens,  # type: ignore[arg-type]
        role=CallerType.USER,
        loop=vloop,  # type: ignore[arg-type]
        timings=CallTimings(),
        on_session_expired=lambda: expired_sessions.append(True),
    )
    # Wire the dispatch function without going through start()
    signaling.on(ctrl._dispatch)
    return ctrl
