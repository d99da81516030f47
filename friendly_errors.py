"""User-facing error vocabulary and the exception taxonomy behind it.

Transport failures are translated at the boundary into one short sentence
from the fixed set below. The three lookup tables (HTTP status, stream error
payload, catch-all) must stay in this exact order: the first match wins.
"""

import json

SERVER_TOO_SLOW = ("Looks like I'm unable to connect with your system. "
                   "The server is taking too long to respond. Please try again in a moment.")
SERVICE_UNAVAILABLE = "The service is temporarily unavailable. Please try again in a moment."
SERVER_ERROR = "Something went wrong on our end. Please try again in a moment."
SESSION_EXPIRED = "Your session has expired. Please log in again."
PERMISSION_DENIED = ("You don't have permission to perform this action. "
                     "Please contact support if this persists.")
CHECK_CONNECTION = ("Looks like I'm unable to connect with your system. "
                    "Please check your internet connection and try again.")
CONNECTION_INTERRUPTED = ("Looks like I'm unable to connect with your system. "
                          "The connection was interrupted. Please try again.")

DEFAULT_CHAT_FAILURE = "Failed to send chat message"
UNEXPECTED_FORMAT = "Unexpected response format from chat API"


class LinkError(Exception):
    """Base for every error this package raises."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ChatStreamError(LinkError):
    """A chat request failed; ``message`` is already user-facing."""


class ConnectivityError(ChatStreamError):
    """Unreachable endpoint, timeout or abnormal close."""


class AuthError(ChatStreamError):
    """Expired or insufficient credentials."""


class ServiceError(ChatStreamError):
    """5xx-class failure on the remote side."""


class ExecutionError(LinkError):
    """A local tool command failed."""


def message_for_status(status: int, status_text: str = "") -> str:
    """Map a non-OK HTTP status (without a JSON error body) to a message."""
    if status == 504 or "Gateway Time-out" in status_text:
        return SERVER_TOO_SLOW
    if status == 503:
        return SERVICE_UNAVAILABLE
    if status == 500:
        return SERVER_ERROR
    if status == 401:
        return SESSION_EXPIRED
    if status == 403:
        return PERMISSION_DENIED
    if status >= 500:
        return SERVER_ERROR
    if status >= 400:
        return CHECK_CONNECTION
    return status_text or f"HTTP error! status: {status}"


def message_for_stream_error(text: str) -> str:
    """Map an error reported inside the stream (``error:`` line or error object)."""
    if "timeout" in text or "Timeout" in text or "Gateway Time-out" in text or "504" in text:
        return SERVER_TOO_SLOW
    if "503" in text or "Service Unavailable" in text:
        return SERVICE_UNAVAILABLE
    if "500" in text or "Internal Server Error" in text:
        return SERVER_ERROR
    if "401" in text or "Unauthorized" in text:
        return SESSION_EXPIRED
    if "NetworkError" in text or "Failed to fetch" in text:
        return CHECK_CONNECTION
    return text


def friendly_message(text: str | None) -> str:
    """Final catch-all translation applied to every failure before it surfaces."""
    text = text or DEFAULT_CHAT_FAILURE
    if "timeout" in text or "Timeout" in text:
        return CHECK_CONNECTION
    if "Gateway Time-out" in text or "504" in text:
        return SERVER_TOO_SLOW
    if "NetworkError" in text or "Failed to fetch" in text:
        return CHECK_CONNECTION
    if "401" in text or "Unauthorized" in text:
        return SESSION_EXPIRED
    if "403" in text or "Forbidden" in text:
        return PERMISSION_DENIED
    if "500" in text or "Internal Server Error" in text:
        return SERVER_ERROR
    if "503" in text or "Service Unavailable" in text:
        return SERVICE_UNAVAILABLE
    return text


_CATEGORY = {
    SERVER_TOO_SLOW: ConnectivityError,
    CHECK_CONNECTION: ConnectivityError,
    CONNECTION_INTERRUPTED: ConnectivityError,
    SESSION_EXPIRED: AuthError,
    PERMISSION_DENIED: AuthError,
    SERVICE_UNAVAILABLE: ServiceError,
    SERVER_ERROR: ServiceError,
}


def chat_error(text: str | None) -> ChatStreamError:
    """Build the typed exception for a failure, translating its text first."""
    message = friendly_message(text)
    return _CATEGORY.get(message, ChatStreamError)(message)


def describe(error) -> str:
    """Readable text for an arbitrary error value."""
    if error is None:
        return "Unknown error"
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        return str(error.get("message") or error.get("error") or json.dumps(error))
    return str(error)
