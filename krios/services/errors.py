"""
API layer exceptions.

Every failure that reaches the UI layer is one of these, so callers can map
``category``/``status_code`` to a friendly message.
"""

from enum import Enum
from typing import Any

import httpx


class ErrorCategory(str, Enum):
    """Failure categories used for retry classification and messaging."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    SERVER = "SERVER"
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    VALIDATION = "VALIDATION"
    STORAGE = "STORAGE"


class ApiError(Exception):
    """Base exception for API layer errors."""

    category: ErrorCategory = ErrorCategory.NETWORK

    def __init__(
        self,
        message: str,
        path: str | None = None,
        status_code: int | None = None,
    ):
        self.path = path
        self.status_code = status_code
        super().__init__(message)


class CacheError(ApiError):
    """Persisted storage is unusable (not a network failure)."""

    category = ErrorCategory.STORAGE


class NetworkError(ApiError):
    """No response was received."""

    category = ErrorCategory.NETWORK


class RequestTimeoutError(NetworkError):
    """Request exceeded the per-call timeout."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, path: str | None, timeout: float | None):
        self.timeout = timeout
        super().__init__(
            f"Request to '{path}' timed out after {timeout}s",
            path=path,
        )


class ServerError(ApiError):
    """5xx response."""

    category = ErrorCategory.SERVER


class RateLimitError(ApiError):
    """429 response."""

    category = ErrorCategory.RATE_LIMIT

    def __init__(self, path: str | None, retry_after: float | None = None):
        self.retry_after = retry_after
        msg = f"Rate limit exceeded for '{path}'"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg, path=path, status_code=429)


class AuthError(ApiError):
    """401 response."""

    category = ErrorCategory.AUTH


class TokenRefreshError(AuthError):
    """Exchanging the refresh token for a new access token failed."""

    pass


class ValidationError(ApiError):
    """Any other 4xx response. Never retried."""

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        path: str | None = None,
        status_code: int | None = None,
        detail: Any = None,
    ):
        self.detail = detail
        super().__init__(message, path=path, status_code=status_code)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200]


def error_from_response(response: httpx.Response, path: str) -> ApiError:
    """Map a non-2xx response onto the error taxonomy."""
    status = response.status_code
    detail = _decode_body(response)
    server_message = detail.get("message") if isinstance(detail, dict) else detail
    message = f"HTTP {status}: {server_message}" if server_message else f"HTTP {status}"

    if status == 401:
        return AuthError(message, path=path, status_code=status)
    if status == 429:
        return RateLimitError(path, parse_retry_after(response.headers.get("Retry-After")))
    if status >= 500:
        return ServerError(message, path=path, status_code=status)
    return ValidationError(message, path=path, status_code=status, detail=detail)
