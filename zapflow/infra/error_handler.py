"""Error taxonomy for gateway and reconciliation failures."""

from typing import Optional, Tuple
from enum import Enum

import httpx


class ErrorCategory(str, Enum):
    """Categories of errors for better handling."""
    NETWORK = "network"  # Gateway unreachable, timeouts, dropped sockets
    API_ERROR = "api_error"  # Gateway returned error response
    AUTH_ERROR = "auth_error"  # Gateway rejected the api key
    MALFORMED_PAYLOAD = "malformed_payload"  # Item missing expected fields
    VALIDATION = "validation"  # Input validation errors
    UNKNOWN = "unknown"


class RetryableError(Exception):
    """Base exception for categorized errors."""
    def __init__(self, message: str, category: ErrorCategory, retryable: bool = True, retry_after: Optional[float] = None):
        self.message = message
        self.category = category
        self.retryable = retryable
        self.retry_after = retry_after
        super().__init__(message)


class NetworkError(RetryableError):
    """Transport unavailable (connection, timeout)."""
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, ErrorCategory.NETWORK, retryable=True, retry_after=retry_after)


class APIError(RetryableError):
    """Gateway returned an error response."""
    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        self.status_code = status_code
        super().__init__(message, ErrorCategory.API_ERROR, retryable=retryable)


class AuthError(RetryableError):
    """Gateway authentication failure."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.AUTH_ERROR, retryable=False)


class MalformedPayloadError(RetryableError):
    """A raw payload item could not be parsed; the item is skipped."""
    def __init__(self, message: str, payload_kind: Optional[str] = None):
        self.payload_kind = payload_kind
        super().__init__(message, ErrorCategory.MALFORMED_PAYLOAD, retryable=False)


class ValidationError(RetryableError):
    """Input validation errors."""
    def __init__(self, message: str):
        super().__init__(message, ErrorCategory.VALIDATION, retryable=False)


def classify_error(error: Exception) -> Tuple[ErrorCategory, bool, Optional[float]]:
    """
    Classify an error into a category and determine if it's retryable.

    Args:
        error: The exception to classify

    Returns:
        Tuple of (category, retryable, retry_after_seconds)
    """
    if isinstance(error, RetryableError):
        return error.category, error.retryable, error.retry_after

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, OSError)):
        return ErrorCategory.NETWORK, True, None

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code in (401, 403):
            return ErrorCategory.AUTH_ERROR, False, None
        return ErrorCategory.API_ERROR, status_code >= 500, None

    return ErrorCategory.UNKNOWN, False, None


def wrap_http_error(error: Exception, operation: str) -> RetryableError:
    """
    Wrap an httpx error raised while talking to the gateway.

    Args:
        error: Original exception
        operation: Short name of the gateway call (for the message)

    Returns:
        RetryableError with appropriate category
    """
    if isinstance(error, RetryableError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code in (401, 403):
            return AuthError(f"{operation}: gateway auth error ({status_code})")
        if status_code >= 500:
            return APIError(f"{operation}: gateway server error ({status_code})", status_code=status_code, retryable=True)
        return APIError(f"{operation}: gateway API error ({status_code})", status_code=status_code)

    # Transport errors and anything unknown are treated as the gateway being unavailable
    return NetworkError(f"{operation}: {error}")


def compute_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
) -> float:
    """
    Delay before retry number ``attempt`` (0-based): base delay, doubling, capped.
    """
    if attempt < 0:
        attempt = 0
    return min(initial_delay * (exponential_base ** attempt), max_delay)
