"""Error taxonomy for the network layer.

Every failure surfaced by the NetworkClient is one of these types. The
retry policy and the user-facing messages are both driven off this
classification, so transport-specific exceptions never leak past
``NetworkClient.fetch``.
"""

from typing import Any, Dict, Optional


class NetworkClientError(Exception):
    """Base exception for request execution errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "NETWORK_CLIENT_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class NetworkError(NetworkClientError):
    """Raised when the request never produced an HTTP response."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, "NETWORK_ERROR")
        self.details = {"url": url}


class OfflineError(NetworkError):
    """Raised when the host environment reports no connectivity."""

    def __init__(self, url: Optional[str] = None):
        super().__init__("Network is offline", url=url)
        self.error_code = "OFFLINE"


class RequestTimeoutError(NetworkClientError):
    """Raised when a single attempt exceeds its time budget."""

    def __init__(self, url: Optional[str] = None, timeout_ms: Optional[int] = None):
        super().__init__(
            f"Request timed out after {timeout_ms}ms", "TIMEOUT_ERROR"
        )
        self.details = {"url": url, "timeout_ms": timeout_ms}


class RequestCancelledError(NetworkClientError):
    """Raised when a caller cancels the request through its token."""

    def __init__(self, url: Optional[str] = None):
        super().__init__("Request was cancelled", "REQUEST_CANCELLED")
        self.details = {"url": url}


class HttpError(NetworkClientError):
    """Raised for any non-2xx HTTP response."""

    def __init__(
        self,
        status: int,
        status_text: str = "",
        body: Any = None,
        url: Optional[str] = None,
        error_code: str = "HTTP_ERROR",
    ):
        super().__init__(f"HTTP {status}: {status_text}".rstrip(": "), error_code)
        self.status = status
        self.status_text = status_text
        self.body = body
        self.details = {"status": status, "status_text": status_text, "url": url}


class RateLimitError(HttpError):
    """Raised for HTTP 429 responses."""

    def __init__(
        self,
        status_text: str = "Too Many Requests",
        body: Any = None,
        url: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
    ):
        super().__init__(429, status_text, body, url, "RATE_LIMIT")
        self.retry_after_seconds = retry_after_seconds
        self.details["retry_after_seconds"] = retry_after_seconds


class AuthError(HttpError):
    """Raised for HTTP 401/403 responses."""

    def __init__(
        self,
        status: int,
        status_text: str = "",
        body: Any = None,
        url: Optional[str] = None,
    ):
        super().__init__(status, status_text, body, url, "AUTH_ERROR")


def http_error_for_status(
    status: int,
    status_text: str = "",
    body: Any = None,
    url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> HttpError:
    """Build the most specific HttpError subclass for a status code."""
    if status == 429:
        retry_after = None
        raw_retry_after = (headers or {}).get("Retry-After")
        if raw_retry_after:
            try:
                retry_after = float(raw_retry_after)
            except ValueError:
                retry_after = None
        return RateLimitError(status_text or "Too Many Requests", body, url, retry_after)

    if status in (401, 403):
        return AuthError(status, status_text, body, url)

    return HttpError(status, status_text, body, url)
