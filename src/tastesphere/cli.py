"""Command line interface for the TasteSphere request core."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

import typer

from .config import CoreSettings
from .logging_config import configure_logging
from .recommender.models import RecommendationRequest
from .service import RecommendationService


def load_settings(config_file: Optional[Path]) -> CoreSettings:
    if config_file is not None:
        return CoreSettings.from_yaml(config_file)
    return CoreSettings()


def parse_filters(values: List[str]) -> Dict[str, str]:
    """Parse repeated ``key=value`` options."""
    filters: Dict[str, str] = {}
    for value in values:
        name, sep, filter_value = value.partition("=")
        if not sep or not name:
            raise typer.BadParameter(f"Expected key=value, got '{value}'")
        filters[name.strip()] = filter_value.strip()
    return filters


def create_app() -> typer.Typer:
    """Create the Typer CLI application."""
    app = typer.Typer(
        name="tastesphere",
        help="Resilient recommendation lookups against the insights API",
        add_completion=False,
    )

    @app.command()
    def recommend(
        entity_type: str = typer.Option(..., "--type", "-t", help="Entity type"),
        signals: List[str] = typer.Option(
            [], "--signal", "-s", help="Signal entity id (repeatable)"
        ),
        take: Optional[int] = typer.Option(None, "--take", "-n", help="Result count"),
        filters: List[str] = typer.Option(
            [], "--filter", "-f", help="Extra filter as key=value (repeatable)"
        ),
        config_file: Optional[Path] = typer.Option(
            None, "--config", "-c", help="Path to YAML configuration file"
        ),
    ) -> None:
        """Fetch recommendations and print them as JSON."""
        settings = load_settings(config_file)
        configure_logging(settings.log_level, settings.log_json)

        request = RecommendationRequest(
            entity_type=entity_type,
            signal_ids=signals,
            take=take,
            filters=parse_filters(filters),
        )

        async def run() -> int:
            async with RecommendationService(settings) as service:
                result = await service.get_recommendations(request)
                typer.echo(result.model_dump_json(indent=2))
                return 0 if result.success else 1

        sys.exit(asyncio.run(run()))

    @app.command()
    def probe(
        config_file: Optional[Path] = typer.Option(
            None, "--config", "-c", help="Path to YAML configuration file"
        ),
    ) -> None:
        """Check that the configured probe URL is reachable."""
        settings = load_settings(config_file)
        configure_logging(settings.log_level, settings.log_json)

        async def run() -> bool:
            async with RecommendationService(settings) as service:
                return await service.client.test_connectivity()

        if asyncio.run(run()):
            typer.echo("✅ Upstream reachable")
        else:
            typer.echo("❌ Upstream unreachable")
            sys.exit(1)

    @app.command()
    def validate(
        config_file: Optional[Path] = typer.Option(
            None, "--config", "-c", help="Path to YAML configuration file"
        ),
    ) -> None:
        """Validate configuration and print the effective settings."""
        try:
            settings = load_settings(config_file)
        except Exception as e:
            typer.echo(f"❌ Configuration validation failed: {e}")
            sys.exit(1)

        effective = settings.model_dump()
        if effective.get("api_key"):
            effective["api_key"] = "***"
        typer.echo(json.dumps(effective, indent=2))
        typer.echo("✅ Configuration validation passed")

    return app


def main() -> None:
    """Main entry point for the tastesphere CLI."""
    app = create_app()
    app()


if __name__ == "__main__":
    main()
