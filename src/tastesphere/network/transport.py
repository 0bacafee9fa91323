"""HTTP transports for the NetworkClient.

A transport is any awaitable callable ``(url, RequestOptions) -> RawResponse``.
It performs exactly one HTTP exchange and never interprets status codes;
retry and error classification belong to the NetworkClient.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
import structlog

from .errors import NetworkError
from .models import RawResponse, RequestOptions

Transport = Callable[[str, RequestOptions], Awaitable[RawResponse]]


class AiohttpTransport:
    """Transport backed by a lazily created aiohttp.ClientSession."""

    def __init__(
        self,
        default_headers: Optional[Dict[str, str]] = None,
        connection_limit: int = 20,
    ):
        """Initialize the transport.

        Args:
            default_headers: Headers sent with every request
            connection_limit: Per-host connection pool size
        """
        self.default_headers = {
            "Accept": "application/json",
            **(default_headers or {}),
        }
        self.connection_limit = connection_limit
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                connector = aiohttp.TCPConnector(
                    limit_per_host=self.connection_limit,
                    enable_cleanup_closed=True,
                )
                self._session = aiohttp.ClientSession(
                    connector=connector,
                    headers=self.default_headers,
                )
                self.logger.debug("aiohttp session created")
            return self._session

    async def __call__(self, url: str, options: RequestOptions) -> RawResponse:
        """Perform one HTTP exchange.

        Args:
            url: Absolute request URL
            options: Method, headers, body and timeout for this attempt

        Returns:
            RawResponse with the parsed body

        Raises:
            NetworkError: If the request could not be completed
        """
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=options.timeout_ms / 1000)

        request_kwargs: Dict[str, Any] = {
            "headers": options.headers,
            "timeout": timeout,
        }
        if options.body is not None:
            request_kwargs["json"] = options.body

        try:
            async with session.request(
                options.method, url, **request_kwargs
            ) as response:
                body = await self._read_body(response)
                return RawResponse(
                    status=response.status,
                    status_text=response.reason or "",
                    headers=dict(response.headers),
                    body=body,
                )
        except asyncio.TimeoutError:
            # Timeouts are classified by the client, not as network failures
            raise
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network request failed: {str(e)}", url=url) from e

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        if response.method == "HEAD":
            return None

        if response.content_type == "application/json":
            return await response.json()

        text = await response.text()
        return text or None

    async def close(self) -> None:
        """Close the underlying session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self.logger.debug("aiohttp session closed")
        self._session = None
