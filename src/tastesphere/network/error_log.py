"""In-memory log of classified errors.

Keeps the most recent classified errors for the process lifetime so
operators can inspect what the UI has been shown.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from .models import ErrorInfo


class ErrorLogEntry(BaseModel):
    """A classified error with the context it happened in."""

    error: ErrorInfo = Field(..., description="Classified error")
    context: Dict[str, Any] = Field(default_factory=dict, description="Call context")


class ErrorLog:
    """Bounded, newest-first log of classified errors."""

    def __init__(self, max_errors: int = 100):
        self.max_errors = max_errors
        self.logger = structlog.get_logger(self.__class__.__name__)
        self._entries: List[ErrorLogEntry] = []

    def record(self, error: ErrorInfo, context: Optional[Dict[str, Any]] = None) -> str:
        """Store an error and return its id."""
        entry = ErrorLogEntry(error=error, context=context or {})
        self._entries.insert(0, entry)
        del self._entries[self.max_errors :]

        self.logger.warning(
            "Error recorded",
            error_id=error.error_id,
            error_code=error.error_code,
            **entry.context,
        )
        return error.error_id

    def get_recent_errors(self, limit: int = 10) -> List[ErrorLogEntry]:
        return self._entries[:limit]

    def get_errors_by_code(self, error_code: str) -> List[ErrorLogEntry]:
        return [e for e in self._entries if e.error.error_code == error_code]

    def get_error_stats(self) -> Dict[str, Any]:
        """Summarize the log by age and error code."""
        now = datetime.now(timezone.utc)
        by_code: Dict[str, int] = {}
        for entry in self._entries:
            by_code[entry.error.error_code] = by_code.get(entry.error.error_code, 0) + 1

        return {
            "total": len(self._entries),
            "last_hour": sum(
                1 for e in self._entries if now - e.error.timestamp < timedelta(hours=1)
            ),
            "today": sum(
                1 for e in self._entries if now - e.error.timestamp < timedelta(days=1)
            ),
            "by_code": by_code,
            "most_recent": (
                self._entries[0].error.timestamp.isoformat() if self._entries else None
            ),
        }

    def clear(self) -> None:
        self._entries.clear()
