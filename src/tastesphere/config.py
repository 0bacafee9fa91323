"""Configuration for the TasteSphere request core.

Settings default to ``TASTESPHERE_*`` environment variables (a ``.env``
file is honoured) and can be overridden from a YAML file or explicitly.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(f"TASTESPHERE_{name}", str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(f"TASTESPHERE_{name}", str(default)).lower() == "true"


class CoreSettings(BaseModel):
    """Settings shared by the network client, cache and coordinators."""

    # Network Configuration
    request_timeout_ms: int = Field(
        default_factory=lambda: _env_int("REQUEST_TIMEOUT_MS", 10000),
        description="Per-attempt HTTP timeout in milliseconds",
    )
    max_retries: int = Field(
        default_factory=lambda: _env_int("MAX_RETRIES", 3),
        description="Retries after the first attempt",
    )
    base_delay_ms: int = Field(
        default_factory=lambda: _env_int("BASE_DELAY_MS", 1000),
        description="Backoff delay for the first retry",
    )
    max_delay_ms: int = Field(
        default_factory=lambda: _env_int("MAX_DELAY_MS", 30000),
        description="Upper bound for any single backoff delay",
    )
    connectivity_timeout_ms: int = Field(
        default_factory=lambda: _env_int("CONNECTIVITY_TIMEOUT_MS", 5000),
        description="Timeout for the connectivity probe",
    )
    connectivity_probe_url: str = Field(
        default_factory=lambda: os.getenv(
            "TASTESPHERE_CONNECTIVITY_PROBE_URL", "https://hackathon.api.qloo.com/"
        ),
        description="Lightweight resource used by the connectivity probe",
    )

    # Cache Configuration
    max_cache_size: int = Field(
        default_factory=lambda: _env_int("MAX_CACHE_SIZE", 50),
        description="Maximum number of cached recommendation results",
    )
    enable_cache: bool = Field(
        default_factory=lambda: _env_bool("ENABLE_CACHE", True),
        description="Serve repeated requests from the cache",
    )
    cache_ttl_seconds: int = Field(
        default_factory=lambda: _env_int("CACHE_TTL_SECONDS", 600),
        description="Age after which a cache entry is no longer live",
    )

    # Upstream Configuration
    insights_base_url: str = Field(
        default_factory=lambda: os.getenv(
            "TASTESPHERE_INSIGHTS_BASE_URL", "https://hackathon.api.qloo.com"
        ),
        description="Base URL of the insights API",
    )
    api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("TASTESPHERE_API_KEY"),
        description="API key sent as X-Api-Key",
    )
    default_take: int = Field(
        default_factory=lambda: _env_int("DEFAULT_TAKE", 10),
        description="Result count when the request does not specify one",
    )
    max_take: int = Field(
        default_factory=lambda: _env_int("MAX_TAKE", 50),
        description="Largest result count the upstream accepts",
    )

    # Coordinator Configuration
    auto_retry: bool = Field(
        default_factory=lambda: _env_bool("AUTO_RETRY", True),
        description="Re-issue failed requests once the delay elapses",
    )
    auto_retry_delay_ms: int = Field(
        default_factory=lambda: _env_int("AUTO_RETRY_DELAY_MS", 2000),
        description="Delay before an automatic re-request",
    )
    max_auto_retries: int = Field(
        default_factory=lambda: _env_int("MAX_AUTO_RETRIES", 1),
        description="Automatic re-requests per logical request",
    )

    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv("TASTESPHERE_LOG_LEVEL", "INFO"),
        description="Root log level",
    )
    log_json: bool = Field(
        default_factory=lambda: _env_bool("LOG_JSON", True),
        description="Render logs as JSON lines",
    )

    @field_validator(
        "request_timeout_ms",
        "base_delay_ms",
        "max_delay_ms",
        "connectivity_timeout_ms",
        "max_cache_size",
        "default_take",
        "max_take",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Limits and delays must be positive."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("max_retries", "max_auto_retries", "auto_retry_delay_ms", "cache_ttl_seconds")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> "CoreSettings":
        """The backoff cap cannot be below the base delay."""
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.default_take > self.max_take:
            raise ValueError("default_take must be <= max_take")
        return self

    @classmethod
    def from_yaml(
        cls, path: Union[str, Path], overrides: Optional[Dict[str, Any]] = None
    ) -> "CoreSettings":
        """Load settings from a YAML mapping.

        Args:
            path: YAML file with setting names as keys
            overrides: Values taking precedence over the file

        Returns:
            Validated settings

        Raises:
            ValueError: If the file does not contain a mapping
        """
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")

        data.update(overrides or {})
        return cls(**data)
