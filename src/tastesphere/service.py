"""Recommendation service - composition root for the request core.

The service builds one NetworkClient and one RecommendationCache from
settings and hands out RequestCoordinators that share them. It owns the
init/teardown lifecycle: stopping the service closes every coordinator,
cancels in-flight work and releases the HTTP transport.
"""

from typing import Any, Dict, List, Optional

import structlog

from .config import CoreSettings
from .coordinator.coordinator import RequestCoordinator
from .network.client import NetworkClient
from .network.error_log import ErrorLog, ErrorLogEntry
from .network.transport import Transport
from .recommender.cache import RecommendationCache, RequestParams
from .recommender.models import CacheStats, RecommendationResult
from .recommender.sources import RecommendationSource


class RecommendationService:
    """Owns the shared client and cache and the coordinators built on them."""

    def __init__(
        self,
        settings: Optional[CoreSettings] = None,
        transport: Optional[Transport] = None,
        source: Optional[RecommendationSource] = None,
    ):
        """Initialize the service.

        Args:
            settings: Core settings
            transport: Injected HTTP transport, aiohttp when omitted
            source: Injected recommendation source, the insights API when omitted
        """
        self.settings = settings or CoreSettings()
        self.logger = structlog.get_logger(self.__class__.__name__)

        self.error_log = ErrorLog()
        self.client = NetworkClient(self.settings, transport=transport)
        self.cache = RecommendationCache(
            self.client, source=source, settings=self.settings, error_log=self.error_log
        )

        self._coordinators: List[RequestCoordinator] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self.logger.info(
            "Recommendation service started",
            insights_base_url=self.settings.insights_base_url,
            max_cache_size=self.settings.max_cache_size,
            max_retries=self.settings.max_retries,
        )

    async def stop(self) -> None:
        """Close coordinators, cancel in-flight calls and release the transport."""
        if not self._running:
            return

        for coordinator in self._coordinators:
            await coordinator.close()
        self._coordinators.clear()

        await self.cache.close()
        await self.client.close()

        self._running = False
        self.logger.info("Recommendation service stopped")

    async def __aenter__(self) -> "RecommendationService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def create_coordinator(self, name: str = "default", **options: Any) -> RequestCoordinator:
        """Create a coordinator bound to the shared cache."""
        coordinator = RequestCoordinator(
            self.cache, settings=self.settings, name=name, **options
        )
        self._coordinators.append(coordinator)
        return coordinator

    async def release_coordinator(self, coordinator: RequestCoordinator) -> None:
        """Tear down a coordinator whose consumer went away."""
        await coordinator.close()
        if coordinator in self._coordinators:
            self._coordinators.remove(coordinator)

    async def get_recommendations(
        self, params: RequestParams, enable_cache: Optional[bool] = None
    ) -> RecommendationResult:
        return await self.cache.get_recommendations(params, enable_cache=enable_cache)

    def get_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def get_status(self) -> Dict[str, Any]:
        """Operational snapshot for diagnostics."""
        return {
            "running": self._running,
            "coordinators": len(self._coordinators),
            "network": self.client.get_network_status().model_dump(),
            "cache": self.cache.get_stats().model_dump(),
            "errors": self.error_log.get_error_stats(),
        }

    def clear_cache(self) -> None:
        self.cache.clear_cache()

    def get_error_message(self, error: BaseException) -> str:
        return self.client.get_error_message(error)

    def get_recent_errors(self, limit: int = 10) -> List[ErrorLogEntry]:
        return self.error_log.get_recent_errors(limit)
