"""
Per-key debouncing of bursty events.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from jobrelay.config.logging import get_logger

logger = get_logger(__name__)


class Debouncer:
    """
    Collapse bursts of events into one callback per key.

    Only the latest value pushed for a key is kept; the callback runs once the
    key has been quiet for delay_s.
    """

    def __init__(
        self,
        delay_s: float,
        callback: Callable[[str, Any], Awaitable[None]],
    ):
        self.delay_s = delay_s
        self.callback = callback
        self._latest: dict[str, Any] = {}
        self._timers: dict[str, asyncio.Task] = {}
        self._closed = False

    @property
    def pending_keys(self) -> list[str]:
        return list(self._latest)

    def push(self, key: str, value: Any) -> None:
        """Record the latest value for key and restart its quiet period."""
        if self._closed:
            return

        self._latest[key] = value
        timer = self._timers.get(key)
        if timer is not None:
            timer.cancel()
        self._timers[key] = asyncio.create_task(self._fire_later(key))

    async def _fire_later(self, key: str) -> None:
        await asyncio.sleep(self.delay_s)
        self._timers.pop(key, None)
        await self._fire(key)

    async def _fire(self, key: str) -> None:
        if key not in self._latest:
            return
        value = self._latest.pop(key)
        try:
            await self.callback(key, value)
        except Exception:
            logger.exception("Debounced callback failed", key=key)

    async def flush(self, key: str | None = None) -> None:
        """Run pending callbacks now instead of waiting for the quiet period."""
        keys = [key] if key is not None else list(self._latest)
        for pending in keys:
            timer = self._timers.pop(pending, None)
            if timer is not None:
                timer.cancel()
            await self._fire(pending)

    async def close(self) -> None:
        """Cancel pending timers and drop buffered values."""
        self._closed = True
        timers = list(self._timers.values())
        self._timers.clear()
        self._latest.clear()
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
