"""Tagged call-control events pushed by the signaling transport."""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from enum import StrEnum

from callmate.call.state import CallSession


class EventKind(StrEnum):
    INCOMING = "call:incoming"
    ACCEPTED = "call:accepted"
    REJECTED = "call:rejected"
    ENDED = "call:ended"
    CONNECTED = "call:connected"
    ERROR = "call:error"


@dataclasses.dataclass(frozen=True)
class IncomingCall:
    session: CallSession
    kind: EventKind = dataclasses.field(default=EventKind.INCOMING, init=False)


@dataclasses.dataclass(frozen=True)
class CallAccepted:
    kind: EventKind = dataclasses.field(default=EventKind.ACCEPTED, init=False)


@dataclasses.dataclass(frozen=True)
class CallRejected:
    reason: str = "declined"
    kind: EventKind = dataclasses.field(default=EventKind.REJECTED, init=False)


@dataclasses.dataclass(frozen=True)
class CallEnded:
    duration: int = 0
    ended_by: str | None = None
    kind: EventKind = dataclasses.field(default=EventKind.ENDED, init=False)


@dataclasses.dataclass(frozen=True)
class CallConnected:
    kind: EventKind = dataclasses.field(default=EventKind.CONNECTED, init=False)


@dataclasses.dataclass(frozen=True)
class SignalingFailure:
    message: str
    kind: EventKind = dataclasses.field(default=EventKind.ERROR, init=False)


SignalEvent = (
    IncomingCall
    | CallAccepted
    | CallRejected
    | CallEnded
    | CallConnected
    | SignalingFailure
)

EventHandler = Callable[[SignalEvent], None]
