"""Pytest configuration and shared fixtures for TasteSphere core tests."""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest
import structlog

from tastesphere.config import CoreSettings
from tastesphere.network.client import NetworkClient
from tastesphere.network.error_log import ErrorLog
from tastesphere.network.models import RawResponse, RequestOptions
from tastesphere.recommender.cache import RecommendationCache
from tastesphere.recommender.models import RecommendationRequest


@pytest.fixture
def test_settings() -> CoreSettings:
    """Settings with millisecond delays so retry paths run quickly."""
    return CoreSettings(
        request_timeout_ms=200,
        max_retries=3,
        base_delay_ms=1,
        max_delay_ms=20,
        connectivity_timeout_ms=100,
        connectivity_probe_url="https://api.test/favicon.ico",
        max_cache_size=50,
        enable_cache=True,
        cache_ttl_seconds=600,
        insights_base_url="https://api.test",
        api_key="test-key",
        default_take=10,
        max_take=50,
        auto_retry=False,
        auto_retry_delay_ms=5,
        max_auto_retries=1,
    )


ScriptedResponse = Union[RawResponse, BaseException, Dict[str, Any]]


class FakeTransport:
    """Transport that replays scripted responses and records every call."""

    def __init__(
        self, responses: Optional[List[ScriptedResponse]] = None, delay: float = 0.0
    ):
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: List[tuple] = []
        self.default = RawResponse(status=200, status_text="OK", body={})

    async def __call__(self, url: str, options: RequestOptions) -> RawResponse:
        self.calls.append((url, options))
        if self.delay:
            await asyncio.sleep(self.delay)

        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return RawResponse(status=200, status_text="OK", body=response)
        return response


class FakeSource:
    """Recommendation source with scripted outcomes and an optional gate."""

    def __init__(self, outcomes: Optional[List[Any]] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[RecommendationRequest] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.cancelled = 0

    def endpoint(self, request: RecommendationRequest) -> str:
        return f"fake:{request.cache_key()}"

    async def fetch(self, request: RecommendationRequest) -> List[Dict[str, Any]]:
        self.calls.append(request)
        self.started.set()
        try:
            if self.gate is not None:
                await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise

        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_entities(
    count: int, entity_type: str = "movie", prefix: str = "e"
) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"{prefix}{i}",
            "name": f"Entity {i}",
            "type": entity_type,
            "score": round(1 - i * 0.1, 2),
        }
        for i in range(count)
    ]


def make_insights_body(entities: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Wrap entity records the way the insights API does."""
    return {
        "success": True,
        "results": {
            "entities": [
                {
                    "entity_id": e["id"],
                    "name": e["name"],
                    "popularity": e.get("score"),
                    "properties": {"description": f"About {e['name']}"},
                }
                for e in entities
            ]
        },
    }


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def network_client(test_settings, fake_transport) -> NetworkClient:
    return NetworkClient(test_settings, transport=fake_transport)


@pytest.fixture
def error_log() -> ErrorLog:
    return ErrorLog()


@pytest.fixture
def recommendation_cache(network_client, fake_source, error_log) -> RecommendationCache:
    return RecommendationCache(network_client, source=fake_source, error_log=error_log)


@pytest.fixture
def movie_request() -> RecommendationRequest:
    return RecommendationRequest(entity_type="movie", signal_ids=["X"], take=10)


@pytest.fixture
def log_capture():
    """Capture structured log events emitted during a test."""
    with structlog.testing.capture_logs() as captured:
        yield captured
