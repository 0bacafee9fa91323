"""Per-consumer request coordination.

A RequestCoordinator binds the shared RecommendationCache to one UI
consumer. Each request mints a strictly increasing token; a result is
published only if its token is still the latest, so an older response
can never overwrite state set by a newer request.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Union

import structlog

from ..config import CoreSettings
from ..network.models import ErrorInfo
from ..recommender.cache import RecommendationCache, RequestParams
from ..recommender.models import Entity, RecommendationResult
from .models import CoordinatorState

StateListener = Callable[[CoordinatorState], None]
EntityPredicate = Callable[[Entity], bool]


class RequestCoordinator:
    """Last-intent-wins request lifecycle for a single consumer."""

    def __init__(
        self,
        cache: RecommendationCache,
        settings: Optional[CoreSettings] = None,
        auto_retry: Optional[bool] = None,
        auto_retry_delay_ms: Optional[int] = None,
        max_auto_retries: Optional[int] = None,
        name: str = "default",
    ):
        """Initialize the coordinator.

        Args:
            cache: Shared recommendation cache
            settings: Core settings, defaults to the cache's
            auto_retry: Re-issue failed non-cache requests automatically
            auto_retry_delay_ms: Delay before an automatic re-request
            max_auto_retries: Automatic re-requests per logical request
            name: Consumer name used in logs
        """
        self.cache = cache
        self.settings = settings or cache.settings
        self.auto_retry = self.settings.auto_retry if auto_retry is None else auto_retry
        self.auto_retry_delay_ms = (
            self.settings.auto_retry_delay_ms
            if auto_retry_delay_ms is None
            else auto_retry_delay_ms
        )
        self.max_auto_retries = (
            self.settings.max_auto_retries
            if max_auto_retries is None
            else max_auto_retries
        )
        self.name = name

        self.logger = structlog.get_logger(self.__class__.__name__).bind(consumer=name)

        self._token = 0
        self._state = CoordinatorState()
        self._in_flight: Optional["asyncio.Future[RecommendationResult]"] = None
        self._retry_handle: Optional["asyncio.Task[None]"] = None
        self._last_params: Optional[RequestParams] = None
        self._last_enable_cache: Optional[bool] = None
        self._listeners: List[StateListener] = []
        self._closed = False

    # Observable state

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def data(self) -> List[Entity]:
        return self._state.data

    @property
    def error(self) -> Optional[ErrorInfo]:
        return self._state.error

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def current_token(self) -> int:
        return self._token

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, callback: StateListener) -> Callable[[], None]:
        """Subscribe to state changes.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _set_state(self, **changes) -> None:
        self._state = self._state.model_copy(update=changes)
        for callback in list(self._listeners):
            try:
                callback(self._state)
            except Exception as e:
                self.logger.error("State listener failed", error=str(e))

    # Requests

    async def request(
        self, params: RequestParams, enable_cache: Optional[bool] = None
    ) -> Optional[RecommendationResult]:
        """Issue a request that supersedes any earlier one.

        Args:
            params: Recommendation request parameters
            enable_cache: False bypasses the cache lookup

        Returns:
            The published result, or None if it was superseded or cancelled
        """
        return await self._request(params, enable_cache, auto_retry_attempt=0)

    async def refresh(self, params: RequestParams) -> Optional[RecommendationResult]:
        """Issue a request that skips the cache lookup."""
        return await self.request(params, enable_cache=False)

    async def retry(self) -> Optional[RecommendationResult]:
        """Re-issue the most recent request, if there is one."""
        if self._last_params is None:
            return None
        return await self.request(self._last_params, enable_cache=self._last_enable_cache)

    async def _request(
        self,
        params: RequestParams,
        enable_cache: Optional[bool],
        auto_retry_attempt: int,
    ) -> Optional[RecommendationResult]:
        if self._closed:
            self.logger.warning("Request on closed coordinator ignored")
            return None

        self._token += 1
        token = self._token
        self._abort_in_flight()
        self._last_params = params
        self._last_enable_cache = enable_cache

        self._set_state(is_loading=True, error=None)

        in_flight = asyncio.ensure_future(
            self.cache.get_recommendations(params, enable_cache=enable_cache)
        )
        self._in_flight = in_flight

        try:
            result = await in_flight
        except asyncio.CancelledError:
            if in_flight.cancelled() and token != self._token:
                # Superseded or cancelled through this coordinator
                return None
            self._set_state(is_loading=False)
            raise
        except Exception as e:
            if token != self._token:
                return None
            self.logger.error("Unexpected request failure", error=str(e))
            error_info = self.cache.client.classify_error(e)
            self._set_state(is_loading=False, error=error_info, from_cache=False)
            return None
        finally:
            if self._in_flight is in_flight:
                self._in_flight = None

        if token != self._token:
            self.logger.debug("Dropping superseded result", token=token, latest=self._token)
            return None

        self._publish(result)

        if (
            not result.success
            and not result.from_cache
            and self.auto_retry
            and result.error is not None
            and result.error.can_retry
            and auto_retry_attempt < self.max_auto_retries
        ):
            self._schedule_auto_retry(params, enable_cache, token, auto_retry_attempt + 1)

        return result

    def _publish(self, result: RecommendationResult) -> None:
        if result.success:
            self._set_state(
                data=result.entities,
                error=None,
                is_loading=False,
                from_cache=result.from_cache,
                last_fetch_time=datetime.now(timezone.utc),
            )
        else:
            self._set_state(
                data=[],
                error=result.error,
                is_loading=False,
                from_cache=False,
            )

    def _schedule_auto_retry(
        self,
        params: RequestParams,
        enable_cache: Optional[bool],
        token: int,
        attempt: int,
    ) -> None:
        async def run() -> None:
            await asyncio.sleep(self.auto_retry_delay_ms / 1000)
            if token != self._token or self._closed:
                return
            self.logger.info("Auto-retrying request", attempt=attempt)
            await self._request(params, enable_cache, auto_retry_attempt=attempt)

        self._cancel_auto_retry()
        self._retry_handle = asyncio.ensure_future(run())

    def _cancel_auto_retry(self) -> None:
        handle = self._retry_handle
        self._retry_handle = None
        if handle is not None and not handle.done() and handle is not asyncio.current_task():
            handle.cancel()

    def _abort_in_flight(self) -> None:
        self._cancel_auto_retry()
        if self._in_flight is not None and not self._in_flight.done():
            self._in_flight.cancel()
        self._in_flight = None

    def cancel(self) -> None:
        """Invalidate the current request and abort its network call."""
        self._token += 1
        self._abort_in_flight()
        if self._state.is_loading:
            self._set_state(is_loading=False)

    def clear(self) -> None:
        """Cancel outstanding work and reset the visible state."""
        self.cancel()
        self._last_params = None
        self._last_enable_cache = None
        self._set_state(
            data=[], error=None, is_loading=False, from_cache=False, last_fetch_time=None
        )

    async def close(self) -> None:
        """Tear down: nothing settles into this coordinator afterwards."""
        if self._closed:
            return

        in_flight, retry_handle = self._in_flight, self._retry_handle
        self.cancel()
        self._closed = True
        self._listeners.clear()

        pending = [t for t in (in_flight, retry_handle) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self.logger.debug("Coordinator closed")

    # Derived views

    def filter_recommendations(
        self, criteria: Union[EntityPredicate, Iterable[str], None] = None
    ) -> List[Entity]:
        """Filter the last published data.

        Args:
            criteria: A predicate, or a collection of allowed entity types;
                None or an empty collection returns everything
        """
        if criteria is None:
            return list(self._state.data)

        if callable(criteria):
            return [e for e in self._state.data if criteria(e)]

        allowed = {t.lower() for t in criteria}
        if not allowed:
            return list(self._state.data)
        return [e for e in self._state.data if e.type in allowed]

    def get_available_types(self) -> List[str]:
        return sorted({e.type for e in self._state.data})

    def group_by_type(self) -> Dict[str, List[Entity]]:
        groups: Dict[str, List[Entity]] = {}
        for entity in self._state.data:
            groups.setdefault(entity.type, []).append(entity)
        return groups
