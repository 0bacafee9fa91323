"""Caching, coalescing front end for recommendation lookups.

This module turns a recommendation request into a cached, deduplicated
result. Concurrent identical requests share one upstream round trip, the
cache is bounded with FIFO eviction, and failures become classified,
non-cached error results.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

from ..config import CoreSettings
from ..network.client import NetworkClient
from ..network.error_log import ErrorLog
from .models import (
    CacheEntry,
    CacheStats,
    Entity,
    RecommendationRequest,
    RecommendationResult,
)
from .sources import InsightsSource, RecommendationSource

RequestParams = Union[RecommendationRequest, Dict[str, Any]]


@dataclass
class PendingRequest:
    """An upstream call in flight for one cache key."""

    key: str
    task: "asyncio.Task[RecommendationResult]"
    waiters: int = 0


class RecommendationCache:
    """Cache and coalescing layer over a recommendation source."""

    def __init__(
        self,
        client: NetworkClient,
        source: Optional[RecommendationSource] = None,
        settings: Optional[CoreSettings] = None,
        error_log: Optional[ErrorLog] = None,
    ):
        """Initialize the recommendation cache.

        Args:
            client: Network client providing retry and error classification
            source: Upstream source; defaults to the insights API
            settings: Core settings, defaults to the client's
            error_log: Receives every classified failure
        """
        self.client = client
        self.error_log = error_log
        self.settings = settings or client.settings
        self.source: RecommendationSource = source or InsightsSource(
            client, self.settings
        )
        self.max_cache_size = self.settings.max_cache_size
        self.cache_ttl_seconds = self.settings.cache_ttl_seconds
        self.enable_cache = self.settings.enable_cache

        self.logger = structlog.get_logger(self.__class__.__name__)

        # Insertion-ordered; the first key is always the oldest entry
        self._cache: Dict[str, CacheEntry] = {}
        self._pending: Dict[str, PendingRequest] = {}

        self._hit_count = 0
        self._miss_count = 0
        self._coalesced_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def normalize_request(self, params: RequestParams) -> RecommendationRequest:
        """Validate params and clamp take to the configured bounds."""
        request = (
            params
            if isinstance(params, RecommendationRequest)
            else RecommendationRequest(**params)
        )
        return request.normalized(self.settings.default_take, self.settings.max_take)

    def make_key(self, params: RequestParams) -> str:
        return self.normalize_request(params).cache_key()

    async def get_recommendations(
        self,
        params: RequestParams,
        enable_cache: Optional[bool] = None,
    ) -> RecommendationResult:
        """Resolve a recommendation request.

        Args:
            params: Request or mapping of request fields
            enable_cache: False skips the cache lookup for this call

        Returns:
            RecommendationResult; failures are returned with success=False
        """
        request = self.normalize_request(params)
        key = request.cache_key()
        use_cache = self.enable_cache if enable_cache is None else enable_cache

        if use_cache:
            entry = self._get_live_entry(key)
            if entry is not None:
                self._hit_count += 1
                self.logger.debug("Cache hit", cache_key=key)
                return entry.value.model_copy(update={"from_cache": True}, deep=True)

        self._miss_count += 1

        # Check-and-insert must not suspend between lookup and registration
        pending = self._pending.get(key)
        if pending is not None:
            self._coalesced_count += 1
            self.logger.debug("Joining in-flight request", cache_key=key)
        else:
            task = asyncio.ensure_future(self._load(key, request))
            pending = PendingRequest(key=key, task=task)
            self._pending[key] = pending
            self.logger.debug("Cache miss, fetching", cache_key=key)

        return await self._wait(pending)

    async def _wait(self, pending: PendingRequest) -> RecommendationResult:
        pending.waiters += 1
        try:
            return await asyncio.shield(pending.task)
        finally:
            pending.waiters -= 1
            if pending.waiters == 0 and not pending.task.done():
                # Nobody is left to observe the result
                self.logger.debug("Aborting unobserved request", cache_key=pending.key)
                if self._pending.get(pending.key) is pending:
                    del self._pending[pending.key]
                pending.task.cancel()

    async def _load(
        self, key: str, request: RecommendationRequest
    ) -> RecommendationResult:
        start_time = time.monotonic()
        endpoint = self.source.endpoint(request)
        attempts = 0

        async def attempt() -> List[Dict[str, Any]]:
            nonlocal attempts
            attempts += 1
            return await self.source.fetch(request)

        def on_retry(error: BaseException, attempt_index: int, delay_ms: float) -> None:
            self.logger.info(
                "Retrying recommendation request",
                cache_key=key,
                attempt=attempt_index,
                delay_ms=round(delay_ms),
                error=str(error),
            )

        try:
            raw = await self.client.execute_with_retry(
                attempt, endpoint, on_retry=on_retry
            )
            entities = self.process_recommendations(raw, request)

            result = RecommendationResult(
                success=True,
                entity_type=request.entity_type,
                entities=entities,
                from_cache=False,
                metadata={
                    "total_found": len(raw or []),
                    "total_returned": len(entities),
                    "attempts": attempts,
                    "processing_time_ms": round(
                        (time.monotonic() - start_time) * 1000, 2
                    ),
                },
            )

            if self.enable_cache:
                self._store(key, result)

            self.logger.info(
                "Recommendations fetched",
                cache_key=key,
                entity_count=len(entities),
                attempts=attempts,
            )
            return result

        except Exception as e:
            self.logger.error(
                "Recommendation request failed",
                cache_key=key,
                attempts=attempts,
                error=str(e),
            )
            return self.create_error_result(e, request, attempts=attempts)

        finally:
            current = self._pending.get(key)
            if current is not None and current.task is asyncio.current_task():
                del self._pending[key]

    def process_recommendations(
        self, raw: Optional[Iterable[Dict[str, Any]]], request: RecommendationRequest
    ) -> List[Entity]:
        """Normalize raw records, dedupe by id and trim to take.

        Upstream order is relevance order; the first occurrence of an id wins.
        """
        seen = set()
        entities: List[Entity] = []

        for item in raw or []:
            try:
                entity = Entity.from_raw(item, request.entity_type)
            except ValueError as e:
                self.logger.warning("Skipping invalid entity", error=str(e))
                continue

            if entity.id in seen:
                continue

            seen.add(entity.id)
            entities.append(entity)

        return entities[: request.take] if request.take else entities

    def create_error_result(
        self,
        error: BaseException,
        request: RecommendationRequest,
        attempts: int = 0,
    ) -> RecommendationResult:
        """Build a classified, never-cached error result."""
        error_info = self.client.classify_error(error)
        if self.error_log is not None:
            self.error_log.record(
                error_info, {"entity_type": request.entity_type, "attempts": attempts}
            )

        return RecommendationResult(
            success=False,
            entity_type=request.entity_type,
            entities=[],
            from_cache=False,
            error=error_info,
            metadata={"total_found": 0, "total_returned": 0, "attempts": attempts},
        )

    async def get_recommendations_by_type(
        self,
        params: RequestParams,
        allowed_types: Optional[Iterable[str]] = None,
        enable_cache: Optional[bool] = None,
    ) -> RecommendationResult:
        """Resolve a request and keep only entities of the allowed types."""
        result = await self.get_recommendations(params, enable_cache=enable_cache)
        if not result.success:
            return result

        allowed = sorted({t.lower() for t in allowed_types or []})
        entities = result.entities
        if allowed:
            entities = [e for e in entities if e.type in allowed]

        return result.model_copy(
            update={
                "entities": entities,
                "metadata": {
                    **result.metadata,
                    "filtered_count": len(entities),
                    "applied_filters": allowed,
                },
            }
        )

    async def refresh_recommendations(
        self, params: RequestParams
    ) -> RecommendationResult:
        """Drop any cached entry for the request and fetch it again."""
        key = self.make_key(params)
        self._cache.pop(key, None)
        return await self.get_recommendations(params)

    def _get_live_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            return None

        if entry.is_expired(self.cache_ttl_seconds):
            del self._cache[key]
            self.logger.debug("Cache entry expired", cache_key=key)
            return None

        return entry

    def _store(self, key: str, result: RecommendationResult) -> None:
        # A refreshed key is replaced wholesale and becomes the newest entry
        self._cache.pop(key, None)

        while len(self._cache) >= self.max_cache_size:
            oldest_key = next(iter(self._cache))
            del self._cache[oldest_key]
            self.logger.debug("Evicted cache entry", cache_key=oldest_key)

        self._cache[key] = CacheEntry(key=key, value=result)

    def cached_keys(self) -> List[str]:
        """Cache keys from oldest to newest."""
        return list(self._cache)

    def clear_cache(self) -> None:
        """Empty the cache; in-flight calls are left running."""
        count = len(self._cache)
        self._cache.clear()
        self.logger.info("Cache cleared", entries_removed=count)

    def get_stats(self) -> CacheStats:
        lookups = self._hit_count + self._miss_count
        return CacheStats(
            cache_size=len(self._cache),
            max_cache_size=self.max_cache_size,
            pending_requests=len(self._pending),
            hit_count=self._hit_count,
            miss_count=self._miss_count,
            coalesced_count=self._coalesced_count,
            cache_hit_rate=self._hit_count / lookups if lookups else 0.0,
        )

    def reset_stats(self) -> None:
        self._hit_count = 0
        self._miss_count = 0
        self._coalesced_count = 0

    async def close(self) -> None:
        """Cancel in-flight calls and drop all cached state."""
        pending = list(self._pending.values())
        self._pending.clear()

        for entry in pending:
            entry.task.cancel()
        if pending:
            await asyncio.gather(*(p.task for p in pending), return_exceptions=True)

        self._cache.clear()
        self.logger.info("Recommendation cache closed", cancelled=len(pending))
