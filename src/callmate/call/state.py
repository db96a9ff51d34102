"""Call session state dataclasses."""

from __future__ import annotations

import dataclasses
from enum import StrEnum
from typing import Any

from callmate.call.errors import ErrorKind

DEFAULT_SERVICE_NAME = "Service Call"


class CallStatus(StrEnum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"


class CallerType(StrEnum):
    USER = "user"
    PROVIDER = "provider"


# Statuses during which exactly one connection timeout must be armed
SUPERVISED_STATUSES = frozenset({CallStatus.CALLING, CallStatus.CONNECTING})


@dataclasses.dataclass(frozen=True)
class CallSession:
    booking_id: str
    caller_id: str
    caller_name: str
    receiver_id: str
    receiver_name: str
    service_name: str = DEFAULT_SERVICE_NAME

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> CallSession:
        """Build a session from the camelCase payload used on the wire.

        Raises KeyError when a participant field is missing.
        """
        return cls(
            booking_id=str(data["bookingId"]),
            caller_id=str(data["callerId"]),
            caller_name=str(data.get("callerName") or ""),
            receiver_id=str(data["receiverId"]),
            receiver_name=str(data.get("receiverName") or ""),
            service_name=str(data.get("serviceName") or DEFAULT_SERVICE_NAME),
        )

    def to_wire(self) -> dict[str, str]:
        return {
            "bookingId": self.booking_id,
            "callerId": self.caller_id,
            "callerName": self.caller_name,
            "receiverId": self.receiver_id,
            "receiverName": self.receiver_name,
            "serviceName": self.service_name,
        }


@dataclasses.dataclass(frozen=True)
class ErrorState:
    message: str
    kind: ErrorKind
    code: str | None = None
    handled: bool = False


@dataclasses.dataclass(frozen=True)
class CallLogEntry:
    """One row of a booking's call history."""

    booking_id: str
    caller_type: str
    caller_id: str
    status: str
    duration: int
    created_at: str

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> CallLogEntry:
        return cls(
            booking_id=str(data.get("booking_id", "")),
            caller_type=str(data.get("caller_type", "")),
            caller_id=str(data.get("caller_id", "")),
            status=str(data.get("call_status", "")),
            duration=int(data.get("duration") or 0),
            created_at=str(data.get("created_at", "")),
        )


@dataclasses.dataclass(frozen=True)
class CallSnapshot:
    """Observable controller state handed to the presentation layer."""

    status: CallStatus
    incoming_call: CallSession | None
    current_call: CallSession | None
    call_duration: int
    last_duration: int
    error: ErrorState | None

    def to_json(self) -> dict[str, Any]:
        error = None
        if self.error is not None:
            error = {
                "message": self.error.message,
                "code": self.error.code,
                "kind": str(self.error.kind),
                "handled": self.error.handled,
            }
        return {
            "status": str(self.status),
            "incomingCall": (
                self.incoming_call.to_wire() if self.incoming_call else None
            ),
            "currentCall": self.current_call.to_wire() if self.current_call else None,
            "callDuration": self.call_duration,
            "lastDuration": self.last_duration,
            "error": error,
        }
