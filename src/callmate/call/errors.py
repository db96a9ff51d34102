"""Call error taxonomy and user-facing messages."""

from __future__ import annotations

from enum import StrEnum

GENERIC_ERROR_MESSAGE = "Failed to initiate call. Please try again."
TIMEOUT_MESSAGE = (
    "Connection timeout. Unable to establish call connection. "
    "Please check your internet connection and try again."
)
SESSION_EXPIRED_MESSAGE = "Session expired. Please sign in again."
TRANSPORT_MESSAGE = "The call could not be completed. Please try again."
ACCEPT_FAILED_MESSAGE = "Failed to accept call. Please try again."

SESSION_EXPIRED_CODE = "SESSION_EXPIRED"
TIMEOUT_CODE = "CALL_TIMEOUT"

# Closed set of server-side refusal codes. Unknown codes never raise.
CALL_ERROR_MESSAGES: dict[str, str] = {
    "CALL_BOOKING_NOT_FOUND": (
        "Unable to find that booking or you no longer have access to it."
    ),
    "CALL_STATUS_NOT_ALLOWED": (
        "Calls are only available for bookings that are in progress."
    ),
    "CALLER_NOT_VERIFIED": "Please verify your account before placing calls.",
    "CALLER_PHONE_MISSING": (
        "Add a valid phone number to your profile before placing calls."
    ),
    "RECEIVER_NOT_VERIFIED": (
        "The other participant must verify their account before calling."
    ),
    "RECEIVER_PHONE_MISSING": (
        "The other participant has not added a phone number yet."
    ),
    "PROVIDER_CALLS_DISABLED": (
        "The service provider is currently unavailable for calls."
    ),
    "CALLER_ROLE_MISMATCH": "Invalid caller information supplied for this booking.",
    "CALL_SELF_NOT_ALLOWED": "You cannot initiate a call with yourself.",
    "CALL_HISTORY_ACCESS_DENIED": (
        "You do not have permission to view this call history."
    ),
    "WEBRTC_PERMISSION_DENIED": "You do not have permission to start this call.",
    "WEBRTC_INVALID_PAYLOAD": (
        "Unsupported call request. Please update the app and try again."
    ),
    "WEBRTC_ERROR": "An unexpected call error occurred. Please try again.",
}


def map_call_error(code: str | None) -> str:
    """Translate a server error code into a user message.

    Absent and unrecognised codes both map to ``GENERIC_ERROR_MESSAGE``.
    """
    if not code:
        return GENERIC_ERROR_MESSAGE
    return CALL_ERROR_MESSAGES.get(code, GENERIC_ERROR_MESSAGE)


class ErrorKind(StrEnum):
    PRECONDITION = "precondition"
    AUTH_EXPIRY = "auth_expiry"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    LOGGING = "logging"
    REJECTED = "rejected"


class CallmateError(Exception):
    """Base class for every error raised by callmate."""


class GatewayError(CallmateError):
    """The session gateway could not be reached or answered garbage."""


class AuthExpiredError(GatewayError):
    """The gateway rejected the bearer credential (HTTP 401)."""


class InitiationError(GatewayError):
    """The gateway refused the request with an optional error code."""

    def __init__(self, code: str | None, message: str | None = None) -> None:
        self.code = code
        self.server_message = message
        super().__init__(message or code or "call request refused")


class SessionExpiredError(CallmateError):
    """Credential could not be renewed.

    ``handled`` is always true: the controller has already routed the failure
    to the global session-expired hook, so outer handlers must not report it.
    """

    handled = True

    def __init__(self, message: str = "Session expired") -> None:
        super().__init__(message)


class SignalingError(CallmateError):
    """The signaling channel failed or refused a command."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class CallInProgressError(CallmateError):
    """A new call was requested while another one is still active."""
