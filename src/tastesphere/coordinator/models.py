"""Coordinator state models."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..network.models import ErrorInfo
from ..recommender.models import Entity


class CoordinatorState(BaseModel):
    """Consumer-visible state of a RequestCoordinator."""

    data: List[Entity] = Field(
        default_factory=list, description="Entities from the last successful request"
    )
    error: Optional[ErrorInfo] = Field(None, description="Error of the last request")
    is_loading: bool = Field(False, description="A request is in flight")
    from_cache: bool = Field(False, description="Data was served from the cache")
    last_fetch_time: Optional[datetime] = Field(
        None, description="When data was last published"
    )

    @property
    def has_recommendations(self) -> bool:
        return len(self.data) > 0

    @property
    def is_empty(self) -> bool:
        return not self.is_loading and self.error is None and not self.data
