"""
Service layer exceptions.

Every failed backend call is classified into exactly one ApiError subclass.
The retryable flag is fixed by class.
"""

from datetime import datetime
from enum import Enum
from typing import Any

import httpx


class ErrorCode(str, Enum):
    """Classification codes for failed calls."""

    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    AUTH_ERROR = "AUTH_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVER_ERROR = "SERVER_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"


class ApiError(Exception):
    """Base exception for classified backend call failures."""

    code: ErrorCode = ErrorCode.CLIENT_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: Any = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details
        self.timestamp = datetime.now()
        super().__init__(message)

    @property
    def is_network_related(self) -> bool:
        """True for failures caused by connectivity rather than the request."""
        return self.code in (ErrorCode.NETWORK_ERROR, ErrorCode.TIMEOUT)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "retryable": self.retryable,
            "status_code": self.status_code,
        }


class NetworkError(ApiError):
    """No response was received."""

    code = ErrorCode.NETWORK_ERROR
    retryable = True


class RequestTimeoutError(ApiError):
    """Request timed out."""

    code = ErrorCode.TIMEOUT
    retryable = True

    def __init__(self, timeout: float | None = None, message: str | None = None):
        self.timeout = timeout
        if message is None:
            message = "Request timed out. The server is taking too long to respond."
            if timeout is not None:
                message = f"Request timed out after {timeout}s."
        super().__init__(message)


class AuthError(ApiError):
    """Credential rejected (401/403)."""

    code = ErrorCode.AUTH_ERROR


class RateLimitError(ApiError):
    """Rate limit exceeded (429)."""

    code = ErrorCode.RATE_LIMITED
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        details: Any = None,
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code=status_code, details=details)


class ServerError(ApiError):
    """Backend failure (5xx)."""

    code = ErrorCode.SERVER_ERROR
    retryable = True


class ValidationError(ApiError):
    """Request rejected by the backend (4xx other than 401/403/429)."""

    code = ErrorCode.VALIDATION_ERROR


class ClientError(ApiError):
    """Unclassified failure on the client side."""

    code = ErrorCode.CLIENT_ERROR


class StorageError(Exception):
    """Durable key/value storage operation failed."""

    pass


_STATUS_MESSAGES: dict[int, str] = {
    400: "Invalid request. Please check your input.",
    401: "Authentication required. Please log in again.",
    403: "Access denied. You don't have permission to perform this action.",
    404: "The requested resource was not found.",
    409: "Conflict. The resource already exists or is in use.",
    422: "Validation failed. Please check your input.",
    429: "Too many requests. Please wait a moment before trying again.",
    500: "Internal server error. Please try again later.",
    502: "Bad gateway. The server is temporarily unavailable.",
    503: "Service unavailable. Please try again later.",
    504: "Gateway timeout. The server took too long to respond.",
}


def _response_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:200] or None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: httpx.Response) -> ApiError:
    """Map an error response to its taxonomy class."""
    status = response.status_code
    details = _response_details(response)
    server_message = details.get("message") if isinstance(details, dict) else None

    if status in (401, 403):
        return AuthError(_STATUS_MESSAGES[status], status_code=status, details=details)

    if status == 429:
        return RateLimitError(
            _STATUS_MESSAGES[429],
            status_code=status,
            details=details,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )

    if status >= 500:
        message = _STATUS_MESSAGES.get(
            status, f"Server error ({status}). Please try again."
        )
        return ServerError(message, status_code=status, details=details)

    if status >= 400:
        message = server_message or _STATUS_MESSAGES.get(
            status, f"Request failed ({status})."
        )
        return ValidationError(message, status_code=status, details=details)

    return ClientError(
        f"Unexpected response status {status}", status_code=status, details=details
    )


def classify_exception(exc: BaseException, timeout: float | None = None) -> ApiError:
    """Map an exception raised while sending a request to its taxonomy class."""
    if isinstance(exc, ApiError):
        return exc

    if isinstance(exc, httpx.TimeoutException):
        return RequestTimeoutError(timeout)

    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(exc.response)

    if isinstance(exc, httpx.TransportError):
        return NetworkError(
            "Network connection failed. Please check your internet connection "
            "and try again.",
            details=str(exc),
        )

    return ClientError(
        str(exc) or "An unexpected error occurred. Please try again.",
        details=type(exc).__name__,
    )
