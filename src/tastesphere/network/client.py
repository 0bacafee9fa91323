"""Network client with timeout, retry and error classification.

This module provides the request execution primitive used by the
recommendation cache: one cancellable, timeout-bounded HTTP attempt,
exponential-backoff retry around arbitrary attempts, failure
classification and host connectivity tracking.
"""

import asyncio
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp
import structlog

from ..config import CoreSettings
from .cancellation import CancellationToken
from .errors import (
    AuthError,
    HttpError,
    NetworkClientError,
    NetworkError,
    OfflineError,
    RateLimitError,
    RequestCancelledError,
    RequestTimeoutError,
    http_error_for_status,
)
from .models import ConnectionQuality, ErrorInfo, NetworkStatus, RequestOptions
from .transport import AiohttpTransport, Transport

OFFLINE_MESSAGE = "You appear to be offline. Please check your internet connection."
TIMEOUT_MESSAGE = "Request timed out. Please try again."
RATE_LIMIT_MESSAGE = "Too many requests. Please wait a moment and try again."
SERVER_ERROR_MESSAGE = "The service is temporarily unavailable. Please try again later."
AUTH_ERROR_MESSAGE = "Authentication error. Please check your API configuration."
NETWORK_ERROR_MESSAGE = "Network error occurred. Please check your connection and try again."
GENERIC_ERROR_MESSAGE = "An unexpected error occurred."

RATE_LIMIT_RETRY_AFTER_MS = 60000
NETWORK_RETRY_AFTER_MS = 3000
DEFAULT_RETRY_AFTER_MS = 5000

RetryCallback = Callable[[BaseException, int, float], None]
ErrorCallback = Callable[[BaseException, int], None]
StatusListener = Callable[[str, bool], None]


def _status_of(error: BaseException) -> Optional[int]:
    if isinstance(error, HttpError):
        return error.status
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status
    return None


class NetworkClient:
    """Executes HTTP requests with timeout, retry and classification."""

    def __init__(
        self,
        settings: Optional[CoreSettings] = None,
        transport: Optional[Transport] = None,
        connection_quality_provider: Optional[
            Callable[[], Optional[ConnectionQuality]]
        ] = None,
        is_online: bool = True,
    ):
        """Initialize the network client.

        Args:
            settings: Core settings (timeouts, retry budget, backoff bounds)
            transport: Injected transport; an aiohttp transport is created if omitted
            connection_quality_provider: Returns connection hints, if the host has any
            is_online: Initial connectivity state
        """
        self.settings = settings or CoreSettings()
        self.max_retries = self.settings.max_retries
        self.base_delay_ms = self.settings.base_delay_ms
        self.max_delay_ms = self.settings.max_delay_ms
        self.request_timeout_ms = self.settings.request_timeout_ms

        self.logger = structlog.get_logger(self.__class__.__name__)

        self._owns_transport = transport is None
        self._transport: Transport = transport or AiohttpTransport()
        self._connection_quality_provider = connection_quality_provider
        self._is_online = is_online

        # Consecutive retries per METHOD:url
        self._retry_attempts: Dict[str, int] = {}
        self._listeners: List[StatusListener] = []

    @property
    def is_online(self) -> bool:
        return self._is_online

    # Connectivity

    def set_online(self, is_online: bool) -> None:
        """Record a host online/offline event and notify listeners."""
        if is_online == self._is_online:
            return

        self._is_online = is_online
        status = "online" if is_online else "offline"
        self.logger.info("Network status changed", status=status)
        self._notify_listeners(status)

    def add_listener(self, callback: StatusListener) -> Callable[[], None]:
        """Subscribe to connectivity changes.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify_listeners(self, status: str) -> None:
        for callback in list(self._listeners):
            try:
                callback(status, self._is_online)
            except Exception as e:
                self.logger.error("Network status listener failed", error=str(e))

    def get_network_status(self) -> NetworkStatus:
        """Snapshot the current connectivity state."""
        connection = None
        if self._connection_quality_provider is not None:
            try:
                connection = self._connection_quality_provider()
            except Exception as e:
                self.logger.debug("Connection quality unavailable", error=str(e))
                connection = None

        return NetworkStatus(is_online=self._is_online, connection=connection)

    async def test_connectivity(self, timeout_ms: Optional[int] = None) -> bool:
        """Probe a lightweight resource to check reachability.

        Never raises; any failure counts as unreachable.
        """
        timeout_ms = timeout_ms or self.settings.connectivity_timeout_ms
        options = RequestOptions(
            method="HEAD",
            headers={"Cache-Control": "no-cache"},
            timeout_ms=timeout_ms,
        )

        try:
            response = await asyncio.wait_for(
                self._transport(self.settings.connectivity_probe_url, options),
                timeout=timeout_ms / 1000,
            )
        except Exception as e:
            self.logger.debug("Connectivity probe failed", error=str(e))
            return False

        return response.ok

    # Retry bookkeeping

    def _retry_key(self, url: str, method: str = "GET") -> str:
        return f"{method.upper()}:{url}"

    def get_retry_count(self, url: str, method: str = "GET") -> int:
        return self._retry_attempts.get(self._retry_key(url, method), 0)

    def increment_retry_count(self, url: str, method: str = "GET") -> int:
        key = self._retry_key(url, method)
        count = min(self._retry_attempts.get(key, 0) + 1, self.max_retries)
        self._retry_attempts[key] = count
        return count

    def reset_retry_count(self, url: str, method: str = "GET") -> None:
        self._retry_attempts.pop(self._retry_key(url, method), None)

    # Classification

    def is_retryable_error(self, error: BaseException) -> bool:
        """Whether an error kind is worth another attempt.

        Network failures, timeouts, HTTP 5xx and HTTP 429 are retryable;
        every other HTTP status and cancellation is not.
        """
        if isinstance(error, RequestCancelledError):
            return False

        status = _status_of(error)
        if status is not None:
            return status >= 500 or status == 429

        return isinstance(
            error,
            (
                NetworkError,
                RequestTimeoutError,
                asyncio.TimeoutError,
                aiohttp.ClientError,
                ConnectionError,
            ),
        )

    def should_retry(
        self,
        error: BaseException,
        url: str,
        method: str = "GET",
        max_retries: Optional[int] = None,
    ) -> bool:
        """Decide whether to retry after a failed attempt."""
        if not self.is_retryable_error(error):
            return False

        budget = self.max_retries if max_retries is None else max_retries
        if self.get_retry_count(url, method) >= budget:
            return False

        if not self._is_online:
            return False

        return True

    def calculate_delay(self, attempt: int) -> float:
        """Exponential backoff with up to 10% positive jitter.

        Args:
            attempt: Zero-based retry index

        Returns:
            Delay in milliseconds, capped at max_delay_ms
        """
        delay = self.base_delay_ms * (2**attempt)
        jitter = random.uniform(0, 0.1 * delay)
        return min(delay + jitter, self.max_delay_ms)

    def get_error_message(self, error: BaseException) -> str:
        """Map an error to a stable, user-facing message."""
        if not self._is_online or isinstance(error, OfflineError):
            return OFFLINE_MESSAGE

        if isinstance(error, (RequestTimeoutError, asyncio.TimeoutError)):
            return TIMEOUT_MESSAGE

        status = _status_of(error)
        if status == 429:
            return RATE_LIMIT_MESSAGE

        if status is not None and status >= 500:
            return SERVER_ERROR_MESSAGE

        if status in (401, 403):
            return AUTH_ERROR_MESSAGE

        if isinstance(error, (NetworkError, aiohttp.ClientError, ConnectionError)):
            return NETWORK_ERROR_MESSAGE

        return str(error) or GENERIC_ERROR_MESSAGE

    def classify_error(self, error: BaseException) -> ErrorInfo:
        """Build the error surface handed to the UI layer."""
        status = _status_of(error)
        message = self.get_error_message(error)

        if isinstance(error, NetworkClientError):
            error_code = error.error_code
        elif status is not None:
            error_code = "HTTP_ERROR"
        elif self.is_retryable_error(error):
            error_code = "NETWORK_ERROR"
        else:
            error_code = "UNEXPECTED_ERROR"

        if not self._is_online and not isinstance(error, NetworkClientError):
            error_code = "OFFLINE"

        if isinstance(error, RateLimitError) or status == 429:
            retry_after_ms = RATE_LIMIT_RETRY_AFTER_MS
        elif status is None and self.is_retryable_error(error):
            retry_after_ms = NETWORK_RETRY_AFTER_MS
        else:
            retry_after_ms = DEFAULT_RETRY_AFTER_MS

        can_retry = not (isinstance(error, AuthError) or status in (401, 403))

        return ErrorInfo(
            error_code=error_code,
            message=message,
            can_retry=can_retry,
            retry_after_ms=retry_after_ms,
            status=status,
        )

    # Execution

    async def fetch(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
        timeout_ms: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Perform a single HTTP attempt.

        Args:
            url: Request URL
            method: HTTP method
            headers: Extra request headers
            body: JSON body
            timeout_ms: Attempt timeout, defaults to request_timeout_ms
            cancel_token: Aborts the attempt when cancelled

        Returns:
            Parsed response body

        Raises:
            OfflineError: If the host is offline; the transport is not called
            RequestTimeoutError: If the attempt exceeds its timeout
            RequestCancelledError: If cancel_token is cancelled
            HttpError: For non-2xx responses
            NetworkError: For transport failures
        """
        if cancel_token is not None and cancel_token.cancelled:
            raise RequestCancelledError(url)

        if not self._is_online:
            raise OfflineError(url)

        timeout_ms = timeout_ms or self.request_timeout_ms
        options = RequestOptions(
            method=method.upper(),
            headers=headers or {},
            body=body,
            timeout_ms=timeout_ms,
        )

        attempt = asyncio.ensure_future(self._transport(url, options))
        remove_callback = (
            cancel_token.add_callback(attempt.cancel) if cancel_token else None
        )

        try:
            response = await asyncio.wait_for(attempt, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(url, timeout_ms)
        except asyncio.CancelledError:
            if cancel_token is not None and cancel_token.cancelled:
                raise RequestCancelledError(url)
            raise
        except NetworkClientError:
            raise
        except (aiohttp.ClientError, OSError) as e:
            raise NetworkError(f"Network request failed: {str(e)}", url=url) from e
        finally:
            if remove_callback is not None:
                remove_callback()

        if not response.ok:
            raise http_error_for_status(
                response.status,
                response.status_text,
                response.body,
                url,
                response.headers,
            )

        return response.body

    async def execute_with_retry(
        self,
        request_fn: Callable[[], Awaitable[Any]],
        url: str,
        method: str = "GET",
        max_retries: Optional[int] = None,
        on_retry: Optional[RetryCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Run request_fn, retrying retryable failures with backoff.

        Args:
            request_fn: Zero-argument coroutine factory performing one attempt
            url: Endpoint used for retry bookkeeping
            method: HTTP method used for retry bookkeeping
            max_retries: Retry budget override
            on_retry: Called as (error, attempt, delay_ms) before each wait
            on_error: Called as (error, attempts) before the final error propagates
            cancel_token: Interrupts backoff waits when cancelled

        Returns:
            Whatever request_fn returns on the first successful attempt

        Raises:
            Exception: The last error once retries are exhausted or not allowed
        """
        budget = self.max_retries if max_retries is None else max_retries
        attempt = 0

        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    raise RequestCancelledError(url)

                try:
                    result = await request_fn()
                except Exception as error:
                    attempt += 1

                    if attempt <= budget and self.should_retry(
                        error, url, method, budget
                    ):
                        self.increment_retry_count(url, method)
                        delay_ms = self.calculate_delay(attempt - 1)

                        self.logger.warning(
                            "Request failed, retrying",
                            url=url,
                            method=method,
                            attempt=attempt,
                            delay_ms=round(delay_ms),
                            error=str(error),
                        )

                        if on_retry is not None:
                            on_retry(error, attempt, delay_ms)

                        if cancel_token is not None:
                            if not await cancel_token.sleep(delay_ms / 1000):
                                raise RequestCancelledError(url) from error
                        else:
                            await asyncio.sleep(delay_ms / 1000)
                        continue

                    self.logger.error(
                        "Request failed",
                        url=url,
                        method=method,
                        attempts=attempt,
                        error=str(error),
                    )
                    if on_error is not None:
                        on_error(error, attempt)
                    raise

                self.reset_retry_count(url, method)
                return result
        except BaseException:
            self.reset_retry_count(url, method)
            raise

    async def fetch_with_retry(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
        timeout_ms: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_retry: Optional[RetryCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Any:
        """``fetch`` wrapped in ``execute_with_retry``."""
        return await self.execute_with_retry(
            lambda: self.fetch(url, method, headers, body, timeout_ms, cancel_token),
            url,
            method,
            on_retry=on_retry,
            on_error=on_error,
            cancel_token=cancel_token,
        )

    async def close(self) -> None:
        """Release the transport and drop listeners and retry counters."""
        if self._owns_transport and isinstance(self._transport, AiohttpTransport):
            await self._transport.close()

        self._listeners.clear()
        self._retry_attempts.clear()
        self.logger.info("Network client closed")
