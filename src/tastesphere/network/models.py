"""Network models for the TasteSphere request core.

This module defines the data exchanged with the injected transport and
the snapshots the NetworkClient exposes to its callers.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class RequestOptions(BaseModel):
    """Options handed to the transport for a single attempt."""

    method: str = Field("GET", description="HTTP method")
    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: Optional[Any] = Field(None, description="JSON-serializable request body")
    timeout_ms: int = Field(10000, description="Per-attempt timeout in milliseconds")


class RawResponse(BaseModel):
    """Transport-level response before status handling."""

    status: int = Field(..., description="HTTP status code")
    status_text: str = Field("", description="HTTP reason phrase")
    headers: Dict[str, str] = Field(default_factory=dict, description="Response headers")
    body: Optional[Any] = Field(None, description="Parsed response body")

    @property
    def ok(self) -> bool:
        """Whether the status is in the 2xx range."""
        return 200 <= self.status < 300


class ConnectionQuality(BaseModel):
    """Optional connection-quality hints from the host environment."""

    effective_type: Optional[str] = Field(None, description="e.g. '4g', 'wifi'")
    downlink_mbps: Optional[float] = Field(None, description="Estimated downlink")
    rtt_ms: Optional[float] = Field(None, description="Estimated round trip time")
    save_data: Optional[bool] = Field(None, description="Reduced data usage requested")


class NetworkStatus(BaseModel):
    """Read-only snapshot of host connectivity."""

    is_online: bool = Field(..., description="Whether the host reports connectivity")
    connection: Optional[ConnectionQuality] = Field(
        None, description="Connection quality hints, None when unavailable"
    )


class ErrorInfo(BaseModel):
    """Classified error handed to the UI layer."""

    error_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex, description="Unique error identifier"
    )
    error_code: str = Field(..., description="Stable machine-readable error code")
    message: str = Field(..., description="Human-readable message")
    can_retry: bool = Field(..., description="Whether a manual retry makes sense")
    retry_after_ms: int = Field(..., description="Suggested wait before retrying")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the error was classified",
    )
    status: Optional[int] = Field(None, description="HTTP status, if any")
