"""Upstream recommendation sources.

A source performs a single upstream attempt for a normalized request and
returns raw entity records. Retries, caching and coalescing happen in the
RecommendationCache around it.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union
from urllib.parse import urlencode

import structlog

from ..config import CoreSettings
from ..network.client import NetworkClient
from .models import InvalidResponseError, RecommendationRequest

logger = structlog.get_logger(__name__)

INSIGHTS_PATH = "/v2/insights"

# Signal used when a request carries no signals of its own
DEFAULT_SIGNAL_ENTITY = "FCE8B172-4795-43E4-B222-3B550DC05FD9"


class RecommendationSource(Protocol):
    """Anything the cache can fetch raw recommendations from."""

    def endpoint(self, request: RecommendationRequest) -> str:
        """Logical endpoint used for retry bookkeeping."""
        ...

    async def fetch(self, request: RecommendationRequest) -> List[Dict[str, Any]]:
        """Perform one upstream attempt."""
        ...


def build_insights_url(base_url: str, request: RecommendationRequest) -> str:
    """Build the insights URL for a normalized request.

    Args:
        base_url: API base URL without trailing path
        request: Request with take already clamped

    Returns:
        Complete insights URL
    """
    signals = request.signal_ids or [DEFAULT_SIGNAL_ENTITY]
    params: List[tuple] = [
        ("filter.type", f"urn:entity:{request.entity_type}"),
        ("signal.interests.entities", ",".join(signals)),
        ("take", str(request.take)),
    ]
    for name in sorted(request.filters):
        params.append((f"filter.{name}", str(request.filters[name])))

    return f"{base_url.rstrip('/')}{INSIGHTS_PATH}?{urlencode(params)}"


def _first(*values: Any) -> Any:
    for value in values:
        if value not in (None, "", []):
            return value
    return None


def parse_insights_response(
    body: Any, entity_type: str, url: Optional[str] = None
) -> List[Dict[str, Any]]:
    """Extract raw entity records from an insights response body.

    Raises:
        InvalidResponseError: If ``results.entities`` is missing
    """
    results = body.get("results") if isinstance(body, dict) else None
    raw_entities = results.get("entities") if isinstance(results, dict) else None
    if not isinstance(raw_entities, list):
        raise InvalidResponseError("Invalid insights response structure", url=url)

    records = []
    for raw in raw_entities:
        if not isinstance(raw, dict):
            logger.warning("Skipping malformed entity", entity_type=entity_type)
            continue

        properties = raw.get("properties") or {}
        image = properties.get("image") or {}
        query = raw.get("query") or {}

        records.append(
            {
                "id": _first(raw.get("entity_id"), raw.get("id")),
                "name": raw.get("name"),
                "type": entity_type,
                "score": _first(raw.get("popularity"), query.get("affinity"), 0.5),
                "metadata": {
                    "description": _first(
                        properties.get("description"),
                        properties.get("short_description"),
                        "",
                    ),
                    "image": image.get("url") if isinstance(image, dict) else None,
                    "year": _first(
                        properties.get("release_year"),
                        properties.get("publication_year"),
                    ),
                    "genre": properties.get("genre") or [],
                    "rating": properties.get("content_rating"),
                    "duration": properties.get("duration"),
                },
            }
        )

    return records


class InsightsSource:
    """Fetches recommendations from the insights API."""

    def __init__(self, client: NetworkClient, settings: Optional[CoreSettings] = None):
        self.client = client
        self.settings = settings or client.settings
        self.logger = structlog.get_logger(self.__class__.__name__)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.api_key:
            headers["X-Api-Key"] = self.settings.api_key
        return headers

    def endpoint(self, request: RecommendationRequest) -> str:
        return build_insights_url(self.settings.insights_base_url, request)

    async def fetch(self, request: RecommendationRequest) -> List[Dict[str, Any]]:
        url = self.endpoint(request)
        self.logger.debug("Fetching insights", url=url)
        body = await self.client.fetch(url, headers=self._headers())
        return parse_insights_response(body, request.entity_type, url)


RawFetch = Callable[
    [RecommendationRequest], Awaitable[Union[List[Dict[str, Any]], Dict[str, Any]]]
]


class CallableSource:
    """Adapts an injected async fetch function into a source.

    The function may return raw entity records or an insights-shaped body.
    """

    def __init__(self, fetch_fn: RawFetch, name: str = "recommendations"):
        self.fetch_fn = fetch_fn
        self.name = name

    def endpoint(self, request: RecommendationRequest) -> str:
        return f"{self.name}:{request.cache_key()}"

    async def fetch(self, request: RecommendationRequest) -> List[Dict[str, Any]]:
        body = await self.fetch_fn(request)
        if isinstance(body, dict):
            return parse_insights_response(
                body, request.entity_type, self.endpoint(request)
            )
        return list(body or [])
