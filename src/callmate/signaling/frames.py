"""JSON frame codec for the signaling websocket.

Every frame is a JSON object ``{"event": str, "data": object}``. Frames that
expect an answer carry an integer ``ref``; the server answers with an
``ack`` frame echoing the same ``ref``.
"""

from __future__ import annotations

import dataclasses
import json
from typing import Any

from callmate.call.state import CallSession
from callmate.signaling.events import (
    CallAccepted,
    CallConnected,
    CallEnded,
    CallRejected,
    EventKind,
    IncomingCall,
    SignalEvent,
    SignalingFailure,
)

ACK_EVENT = "ack"

# Outgoing commands
JOIN = "join"
CALL_INITIATE = "call:initiate"
CALL_ACCEPT = "call:accept"
CALL_REJECT = "call:reject"
CALL_END = "call:end"


class FrameError(ValueError):
    """Raised for frames that are not valid signaling JSON."""


@dataclasses.dataclass
class Frame:
    event: str
    data: dict[str, Any]
    ref: int | None = None

    @property
    def is_ack(self) -> bool:
        return self.event == ACK_EVENT


def encode_frame(
    event: str, data: dict[str, Any] | None = None, *, ref: int | None = None
) -> str:
    frame: dict[str, Any] = {"event": event, "data": data or {}}
    if ref is not None:
        frame["ref"] = ref
    return json.dumps(frame, separators=(",", ":"))


def decode_frame(text: str) -> Frame:
    """Parse one websocket text message into a Frame."""
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FrameError(f"invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise FrameError("frame must be a JSON object")
    event = raw.get("event")
    if not isinstance(event, str) or not event:
        raise FrameError("frame has no event name")
    data = raw.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise FrameError(f"{event}: data must be an object")
    ref = raw.get("ref")
    if ref is not None and (isinstance(ref, bool) or not isinstance(ref, int)):
        raise FrameError(f"{event}: ref must be an integer")
    return Frame(event=event, data=data, ref=ref)


def frame_to_event(frame: Frame) -> SignalEvent | None:
    """Map an inbound frame onto a call-control event.

    Returns None for frames that carry no call-control meaning (offer/answer
    and ICE relays belong to the media layer). Raises FrameError when a known
    event has an unusable payload.
    """
    data = frame.data
    match frame.event:
        case EventKind.INCOMING:
            try:
                return IncomingCall(session=CallSession.from_wire(data))
            except KeyError as exc:
                raise FrameError(f"call:incoming missing {exc}") from exc
        case EventKind.ACCEPTED:
            return CallAccepted()
        case EventKind.REJECTED:
            return CallRejected(reason=str(data.get("reason") or "declined"))
        case EventKind.ENDED:
            try:
                duration = int(data.get("duration") or 0)
            except (TypeError, ValueError) as exc:
                raise FrameError("call:ended duration is not a number") from exc
            ended_by = data.get("endedBy")
            return CallEnded(
                duration=max(duration, 0),
                ended_by=str(ended_by) if ended_by is not None else None,
            )
        case EventKind.CONNECTED:
            return CallConnected()
        case EventKind.ERROR:
            return SignalingFailure(
                message=str(data.get("message") or "Call signaling error")
            )
    return None
