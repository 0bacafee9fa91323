"""Recommendation models for the TasteSphere request core.

This module defines request normalization and cache keys, the
normalized entity and result shapes, and the cache bookkeeping records.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..network.errors import NetworkClientError
from ..network.models import ErrorInfo


class RecommendationRequest(BaseModel):
    """Parameters of one logical recommendation lookup."""

    entity_type: str = Field(..., description="Entity type to recommend (e.g. 'movie')")
    signal_ids: List[str] = Field(
        default_factory=list, description="Upstream entity ids used as taste signals"
    )
    take: Optional[int] = Field(None, description="Number of results to fetch")
    filters: Dict[str, Any] = Field(
        default_factory=dict, description="Extra upstream filter parameters"
    )

    @field_validator("entity_type")
    @classmethod
    def normalize_entity_type(cls, v: str) -> str:
        normalized = v.strip().lower()
        if not normalized:
            raise ValueError("entity_type must not be empty")
        return normalized

    @field_validator("signal_ids")
    @classmethod
    def normalize_signal_ids(cls, v: List[str]) -> List[str]:
        """Signals are a set: strip, drop blanks, dedupe and sort."""
        return sorted({s.strip() for s in v if s and s.strip()})

    def normalized(self, default_take: int, max_take: int) -> "RecommendationRequest":
        """Return a copy with take clamped to [1, max_take]."""
        take = self.take if self.take else default_take
        take = min(max(1, take), max_take)
        return self.model_copy(update={"take": take})

    def cache_key(self) -> str:
        """Stable, order-independent serialization of the request."""
        return json.dumps(
            {
                "entityType": self.entity_type,
                "signalIds": sorted(self.signal_ids),
                "takeCount": self.take,
                "filters": self.filters,
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )


class Entity(BaseModel):
    """A normalized recommended entity."""

    id: str = Field(..., description="Upstream entity identifier")
    name: str = Field(..., description="Display name")
    type: str = Field(..., description="Lower-cased entity type")
    score: float = Field(0.5, description="Relevance score in [0, 1]")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Extra details")

    @classmethod
    def from_raw(cls, raw: Dict[str, Any], default_type: str) -> "Entity":
        """Normalize a raw upstream record.

        Raises:
            ValueError: If the record has neither an id nor a name
        """
        if not isinstance(raw, dict):
            raise ValueError(f"Expected a mapping, got {type(raw).__name__}")

        name = str(raw.get("name") or "").strip()
        entity_type = str(raw.get("type") or default_type).strip().lower()
        raw_id = raw.get("id")
        entity_id = "" if raw_id is None else str(raw_id).strip()

        if not entity_id:
            if not name:
                raise ValueError("Entity has neither id nor name")
            entity_id = f"{entity_type}:{name.lower()}"

        try:
            score = float(raw.get("score", 0.5))
        except (TypeError, ValueError):
            score = 0.5
        score = min(max(score, 0.0), 1.0)

        return cls(
            id=entity_id,
            name=name or "Unknown",
            type=entity_type,
            score=score,
            metadata=dict(raw.get("metadata") or {}),
        )


class RecommendationResult(BaseModel):
    """Outcome of a recommendation lookup."""

    success: bool = Field(True, description="Whether the lookup succeeded")
    entity_type: str = Field(..., description="Requested entity type")
    entities: List[Entity] = Field(
        default_factory=list, description="Deduplicated entities in relevance order"
    )
    fetched_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the upstream call resolved",
    )
    from_cache: bool = Field(False, description="Served from the cache")
    error: Optional[ErrorInfo] = Field(None, description="Classified failure, if any")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Diagnostics")

    def get_available_types(self) -> List[str]:
        return sorted({e.type for e in self.entities})


class CacheEntry(BaseModel):
    """Immutable cached result."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(..., description="Cache key")
    value: RecommendationResult = Field(..., description="Cached result")
    stored_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Insertion timestamp",
    )

    def is_expired(self, ttl_seconds: int) -> bool:
        """A zero TTL means entries never expire."""
        if ttl_seconds <= 0:
            return False
        age = (datetime.now(timezone.utc) - self.stored_at).total_seconds()
        return age > ttl_seconds


class CacheStats(BaseModel):
    """Cumulative cache counters."""

    cache_size: int = Field(..., description="Entries currently cached")
    max_cache_size: int = Field(..., description="Configured capacity")
    pending_requests: int = Field(..., description="Calls currently in flight")
    hit_count: int = Field(..., description="Lookups served from the cache")
    miss_count: int = Field(..., description="Lookups not served from the cache")
    coalesced_count: int = Field(..., description="Misses joined to an in-flight call")
    cache_hit_rate: float = Field(..., description="hits / (hits + misses)")


class InvalidResponseError(NetworkClientError):
    """Raised when the upstream body does not have the expected shape."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message, "INVALID_RESPONSE")
        self.details = {"url": url}
