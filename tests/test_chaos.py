"""Chaos tests for the request core.

These tests inject random failures, connectivity flaps and request storms
to verify that no work leaks and that only the latest intent is published.
"""

import asyncio
import random

import pytest

from tastesphere.coordinator.coordinator import RequestCoordinator
from tastesphere.network.client import OFFLINE_MESSAGE
from tastesphere.network.errors import HttpError, NetworkError, RateLimitError
from tastesphere.recommender.cache import RecommendationCache
from tastesphere.recommender.sources import CallableSource

from .conftest import make_entities, make_insights_body


class TestUnreliableUpstream:
    """Test behaviour when the upstream fails unpredictably."""

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_random_failures_never_leak(self, network_client):
        """Test every lookup settles and nothing stays pending."""
        rng = random.Random(42)

        async def flaky(request):
            await asyncio.sleep(rng.uniform(0, 0.005))
            if rng.random() < 0.5:
                raise NetworkError("connection reset")
            return make_entities(2, request.entity_type, request.entity_type)

        cache = RecommendationCache(network_client, source=CallableSource(flaky))

        results = await asyncio.gather(
            *(cache.get_recommendations({"entity_type": f"t{i % 10}"}) for i in range(40))
        )

        assert len(results) == 40
        for result in results:
            assert result.success or result.error.error_code == "NETWORK_ERROR"
        assert cache.pending_count == 0
        assert network_client._retry_attempts == {}

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_mixed_transient_errors_recover(self, recommendation_cache, fake_source):
        """Test a run of different retryable errors still succeeds."""
        fake_source.outcomes = [RateLimitError(), HttpError(502), make_entities(2)]

        result = await recommendation_cache.get_recommendations({"entity_type": "movie"})

        assert result.success is True
        assert result.metadata["attempts"] == 3

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_going_offline_stops_retries(self, network_client):
        """Test a connectivity drop mid-request ends the retry loop."""
        calls = []

        async def drops_connection(request):
            calls.append(request)
            network_client.set_online(False)
            raise NetworkError("connection reset")

        cache = RecommendationCache(network_client, source=CallableSource(drops_connection))

        result = await cache.get_recommendations({"entity_type": "movie"})

        assert len(calls) == 1
        assert result.success is False
        assert result.error.message == OFFLINE_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_recovery_after_reconnect(self, network_client, fake_transport):
        """Test lookups succeed again once connectivity returns."""
        cache = RecommendationCache(network_client)
        network_client.set_online(False)
        offline = await cache.get_recommendations({"entity_type": "movie"})

        network_client.set_online(True)
        fake_transport.responses = [make_insights_body(make_entities(2))]
        online = await cache.get_recommendations({"entity_type": "movie"})

        assert offline.error.error_code == "OFFLINE"
        assert online.success is True
        assert len(fake_transport.calls) == 1


class TestRequestStorms:
    """Test bursts of superseding and cancelled requests."""

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_supersede_storm_publishes_latest(self, network_client):
        """Test only the last of a burst of requests is published."""
        rng = random.Random(7)

        async def jittery(request):
            await asyncio.sleep(rng.uniform(0.001, 0.01))
            return make_entities(1, request.entity_type, request.entity_type)

        cache = RecommendationCache(network_client, source=CallableSource(jittery))
        coordinator = RequestCoordinator(cache)

        tasks = [
            asyncio.create_task(coordinator.request({"entity_type": f"type{i}"}))
            for i in range(20)
        ]
        results = await asyncio.gather(*tasks)
        await asyncio.sleep(0.02)

        assert all(r is None for r in results[:-1])
        assert results[-1].success is True
        assert [e.type for e in coordinator.data] == ["type19"]
        assert coordinator.is_loading is False
        assert cache.pending_count == 0

        await coordinator.close()

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_cancelled_consumers_do_not_starve_survivor(
        self, recommendation_cache, fake_source
    ):
        """Test cancelling most consumers of a shared call leaves it running."""
        fake_source.gate = asyncio.Event()
        fake_source.outcomes = [make_entities(3)]
        coordinators = [
            RequestCoordinator(recommendation_cache, name=f"c{i}") for i in range(10)
        ]

        tasks = [
            asyncio.create_task(c.request({"entity_type": "movie"})) for c in coordinators
        ]
        await fake_source.started.wait()
        await asyncio.sleep(0)
        for coordinator in coordinators[:-1]:
            coordinator.cancel()
        fake_source.gate.set()
        results = await asyncio.gather(*tasks)

        assert results[:-1] == [None] * 9
        assert results[-1].success is True
        assert len(fake_source.calls) == 1
        assert fake_source.cancelled == 0

        for coordinator in coordinators:
            await coordinator.close()

    @pytest.mark.asyncio
    @pytest.mark.chaos
    async def test_all_consumers_cancelled_aborts_call(
        self, recommendation_cache, fake_source
    ):
        """Test the shared call is aborted once every consumer leaves."""
        fake_source.gate = asyncio.Event()
        coordinators = [RequestCoordinator(recommendation_cache) for _ in range(5)]

        tasks = [
            asyncio.create_task(c.request({"entity_type": "movie"})) for c in coordinators
        ]
        await fake_source.started.wait()
        await asyncio.sleep(0)
        for coordinator in coordinators:
            coordinator.cancel()
        results = await asyncio.gather(*tasks)
        await asyncio.sleep(0.01)

        assert results == [None] * 5
        assert fake_source.cancelled == 1
        assert recommendation_cache.pending_count == 0
