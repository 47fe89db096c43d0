"""
User-facing descriptions for API errors.
"""

from dataclasses import dataclass

from krios.services.errors import (
    ApiError,
    ErrorCategory,
    TokenRefreshError,
    ValidationError,
)


@dataclass(frozen=True)
class ErrorMessage:
    title: str
    message: str


NETWORK_ERROR = ErrorMessage(
    "Lost in Space",
    "We couldn't reach our servers. Please check your connection and try again.",
)
TIMEOUT = ErrorMessage(
    "Orbit Delayed",
    "The stars are taking longer than usual to align. Please try again in a moment.",
)
SERVER_ERROR = ErrorMessage(
    "Cosmic Turbulence",
    "Our servers hit a small asteroid. We're working on it, please try again shortly.",
)
RATE_LIMIT = ErrorMessage(
    "Slow Down, Star!",
    "You're moving too fast through the cosmos. Take a breath and try again in a moment.",
)
UNAUTHORIZED = ErrorMessage(
    "Access Denied",
    "Your orbit pass has expired. Please sign in again to continue your journey.",
)
SESSION_EXPIRED = ErrorMessage(
    "Session Drifted Away",
    "Your session has floated into the void. Please sign in again.",
)
VALIDATION_ERROR = ErrorMessage(
    "Check Your Coordinates",
    "Some information seems off. Please review and correct the highlighted fields.",
)
ALREADY_MEMBER = ErrorMessage(
    "Already in Orbit",
    "You're already part of this constellation! No need to join again.",
)
ALREADY_FRIENDS = ErrorMessage(
    "Already Connected",
    "You're already orbiting together! No need to send another request.",
)
TASK_ALREADY_COMPLETED = ErrorMessage(
    "Already Shining!",
    "You've already completed this task today. Keep up the stellar work!",
)
ROOM_EXPIRED = ErrorMessage(
    "Orbit Completed",
    "This room's journey has ended. The stars have moved on to new adventures.",
)
ROOM_NOT_FOUND = ErrorMessage(
    "Orbit Not Found",
    "This orbit seems to have drifted away. It may have been disbanded or doesn't exist.",
)
TASK_NOT_FOUND = ErrorMessage(
    "Task Lost in Space",
    "This task seems to have drifted away. It may have been removed.",
)
USER_NOT_FOUND = ErrorMessage(
    "Star Not Found",
    "We couldn't find this user in our galaxy.",
)
STORAGE_ERROR = ErrorMessage(
    "Logbook Unavailable",
    "We couldn't save data on this device. Check free space and permissions, then try again.",
)
UNKNOWN_ERROR = ErrorMessage(
    "Something Went Wrong",
    "An unexpected cosmic event occurred. Please try again or contact support if it persists.",
)

# Checked in order against the lowercased server message of a 400
_BAD_REQUEST_HINTS = (
    ("already a member", ALREADY_MEMBER),
    ("already friends", ALREADY_FRIENDS),
    ("already completed", TASK_ALREADY_COMPLETED),
    ("expired", ROOM_EXPIRED),
)

_NOT_FOUND_HINTS = (
    ("room", ROOM_NOT_FOUND),
    ("task", TASK_NOT_FOUND),
    ("user", USER_NOT_FOUND),
)

_BY_CATEGORY = {
    ErrorCategory.NETWORK: NETWORK_ERROR,
    ErrorCategory.TIMEOUT: TIMEOUT,
    ErrorCategory.SERVER: SERVER_ERROR,
    ErrorCategory.RATE_LIMIT: RATE_LIMIT,
    ErrorCategory.AUTH: UNAUTHORIZED,
    ErrorCategory.STORAGE: STORAGE_ERROR,
}


def _server_message(error: ValidationError) -> str:
    detail = error.detail
    if isinstance(detail, dict):
        detail = detail.get("message")
    return str(detail or "").lower()


def describe_error(error: Exception, context: str = "") -> ErrorMessage:
    """
    Pick a friendly message for an error.

    ``context`` ("room", "task", "user") disambiguates 404s when the server
    message does not.
    """
    if not isinstance(error, ApiError):
        return UNKNOWN_ERROR
    if isinstance(error, TokenRefreshError):
        return SESSION_EXPIRED
    if isinstance(error, ValidationError):
        server_message = _server_message(error)
        if error.status_code == 400:
            for hint, message in _BAD_REQUEST_HINTS:
                if hint in server_message:
                    return message
            return VALIDATION_ERROR
        if error.status_code == 403:
            return UNAUTHORIZED
        if error.status_code == 404:
            for hint, message in _NOT_FOUND_HINTS:
                if context == hint or hint in server_message:
                    return message
        return UNKNOWN_ERROR
    return _BY_CATEGORY.get(error.category, UNKNOWN_ERROR)
