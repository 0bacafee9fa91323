"""Tests for the recommendation service and command line interface."""

from unittest.mock import patch

import pytest
import typer
from typer.testing import CliRunner

from tastesphere.cli import create_app, parse_filters
from tastesphere.network.errors import NetworkError
from tastesphere.network.models import RawResponse
from tastesphere.network.transport import AiohttpTransport
from tastesphere.service import RecommendationService

from .conftest import FakeTransport, make_entities, make_insights_body


@pytest.fixture
async def service(test_settings, fake_transport, fake_source):
    """Create a started service with fake upstreams."""
    service = RecommendationService(
        test_settings, transport=fake_transport, source=fake_source
    )
    await service.start()

    yield service

    await service.stop()


class TestRecommendationService:
    """Test the service composition root."""

    @pytest.mark.asyncio
    async def test_components_share_settings(self, service, test_settings):
        """Test client and cache are built from the same settings."""
        assert service.running is True
        assert service.client.settings is test_settings
        assert service.cache.client is service.client
        assert service.cache.error_log is service.error_log

    @pytest.mark.asyncio
    async def test_default_transport(self, test_settings):
        """Test an aiohttp transport is created when none is injected."""
        service = RecommendationService(test_settings)

        assert isinstance(service.client._transport, AiohttpTransport)

        await service.start()
        await service.stop()

    @pytest.mark.asyncio
    async def test_get_recommendations(self, service, fake_source):
        """Test lookups go through the shared cache."""
        fake_source.outcomes = [make_entities(2)]

        first = await service.get_recommendations({"entity_type": "movie"})
        second = await service.get_recommendations({"entity_type": "movie"})

        assert first.success is True
        assert second.from_cache is True
        assert service.get_stats().hit_count == 1

    @pytest.mark.asyncio
    async def test_coordinators_share_cache(self, service, fake_source):
        """Test coordinators reuse the service cache."""
        fake_source.outcomes = [make_entities(2)]
        first = service.create_coordinator("first")
        second = service.create_coordinator("second", auto_retry=False)

        await first.request({"entity_type": "movie"})
        await second.request({"entity_type": "movie"})

        assert first.cache is second.cache is service.cache
        assert second.state.from_cache is True
        assert len(fake_source.calls) == 1

    @pytest.mark.asyncio
    async def test_release_coordinator(self, service):
        """Test released coordinators are closed and forgotten."""
        coordinator = service.create_coordinator("gone")

        await service.release_coordinator(coordinator)

        assert coordinator.closed is True
        assert service.get_status()["coordinators"] == 0

    @pytest.mark.asyncio
    async def test_stop_closes_coordinators(
        self, test_settings, fake_transport, fake_source
    ):
        """Test stopping tears down every coordinator."""
        async with RecommendationService(
            test_settings, transport=fake_transport, source=fake_source
        ) as service:
            coordinator = service.create_coordinator()

        assert coordinator.closed is True
        assert service.running is False

    @pytest.mark.asyncio
    async def test_status(self, service, fake_source):
        """Test the status snapshot covers every component."""
        fake_source.outcomes = [NetworkError(f"reset {i}") for i in range(4)]
        await service.get_recommendations({"entity_type": "movie"})

        status = service.get_status()

        assert status["running"] is True
        assert status["network"]["is_online"] is True
        assert status["cache"]["miss_count"] == 1
        assert status["errors"]["by_code"] == {"NETWORK_ERROR": 1}
        assert service.get_recent_errors()[0].context["attempts"] == 4

    @pytest.mark.asyncio
    async def test_clear_cache(self, service):
        """Test clearing goes through to the cache."""
        await service.get_recommendations({"entity_type": "movie"})
        service.clear_cache()

        assert service.get_stats().cache_size == 0

    def test_error_message(self, test_settings, fake_transport):
        """Test user-facing messages come from the client."""
        service = RecommendationService(test_settings, transport=fake_transport)

        assert service.get_error_message(NetworkError("x")) == (
            service.client.get_error_message(NetworkError("x"))
        )


def service_factory(transport):
    def factory(settings):
        return RecommendationService(settings, transport=transport)

    return factory


class TestCli:
    """Test the command line interface."""

    def setup_method(self):
        self.runner = CliRunner()
        self.app = create_app()

    def invoke(self, args, transport=None):
        with patch(
            "tastesphere.cli.RecommendationService",
            service_factory(transport or FakeTransport()),
        ), patch("tastesphere.cli.configure_logging"):
            return self.runner.invoke(self.app, args)

    def test_recommend(self):
        """Test recommendations are printed as JSON."""
        transport = FakeTransport([make_insights_body(make_entities(2))])

        result = self.invoke(
            ["recommend", "--type", "movie", "-s", "A", "-f", "year=2020"], transport
        )

        assert result.exit_code == 0
        assert '"success": true' in result.output
        assert '"e1"' in result.output
        url, _ = transport.calls[0]
        assert "filter.year=2020" in url

    def test_recommend_failure(self):
        """Test a failed lookup exits non-zero."""
        transport = FakeTransport([RawResponse(status=404, status_text="Not Found")])

        result = self.invoke(["recommend", "--type", "movie"], transport)

        assert result.exit_code == 1
        assert '"success": false' in result.output

    def test_recommend_requires_type(self):
        """Test the entity type is mandatory."""
        result = self.invoke(["recommend"])

        assert result.exit_code != 0

    def test_probe_reachable(self):
        """Test a reachable upstream."""
        result = self.invoke(["probe"])

        assert result.exit_code == 0
        assert "Upstream reachable" in result.output

    def test_probe_unreachable(self):
        """Test an unreachable upstream exits non-zero."""
        result = self.invoke(["probe"], FakeTransport([NetworkError("refused")]))

        assert result.exit_code == 1
        assert "Upstream unreachable" in result.output

    def test_validate_masks_api_key(self, monkeypatch):
        """Test the effective settings are printed without the key."""
        monkeypatch.setenv("TASTESPHERE_API_KEY", "secret")

        result = self.invoke(["validate"])

        assert result.exit_code == 0
        assert "secret" not in result.output
        assert '"api_key": "***"' in result.output
        assert "Configuration validation passed" in result.output

    def test_validate_invalid_file(self, tmp_path):
        """Test invalid configuration files are reported."""
        path = tmp_path / "bad.yaml"
        path.write_text("max_cache_size: 0\n")

        result = self.invoke(["validate", "--config", str(path)])

        assert result.exit_code == 1
        assert "Configuration validation failed" in result.output


class TestParseFilters:
    """Test --filter parsing."""

    def test_pairs(self):
        """Test key=value pairs become a mapping."""
        assert parse_filters(["year=2020", " genre = drama "]) == {
            "year": "2020",
            "genre": "drama",
        }

    @pytest.mark.parametrize("value", ["year", "=2020"])
    def test_invalid(self, value):
        """Test malformed filters are rejected."""
        with pytest.raises(typer.BadParameter):
            parse_filters([value])
