"""Explicit cancellation tokens passed through the request call chain."""

import asyncio
from typing import Callable, List, Optional

import structlog

logger = structlog.get_logger(__name__)


class CancellationToken:
    """One-shot cancellation signal checked at every suspension point."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the token and run registered callbacks once."""
        if self._cancelled:
            return

        self._cancelled = True
        if self._event is not None:
            self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed", error=str(e))

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first.

        Returns:
            True if the full delay elapsed, False if the token was cancelled
        """
        if self._cancelled:
            return False

        if self._event is None:
            self._event = asyncio.Event()

        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False
