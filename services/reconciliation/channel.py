from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from services.reconciliation.events import Change

logger = logging.getLogger(__name__)

Handler = Callable[[Change], Union[None, Awaitable[None]]]

_CLOSE = object()


class ChangeChannel:
    """
    Single-consumer message channel for externally sourced changes.
    Producers call publish(); exactly one run(handler) loop drains it.
    """

    def __init__(
        self,
        *,
        max_consecutive_errors: int = 3,
        on_degraded: Optional[Callable[[], None]] = None,
    ) -> None:
        self._queue: "asyncio.Queue[object]" = asyncio.Queue()
        self._running = False
        self._closed = False
        self.max_consecutive_errors = max_consecutive_errors
        self.on_degraded = on_degraded
        self.consecutive_errors = 0
        self.handled = 0
        self.failed = 0

    def publish(self, change: Change) -> None:
        if self._closed:
            raise RuntimeError("change channel is closed")
        self._queue.put_nowait(change)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSE)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def run(self, handler: Handler) -> None:
        if self._running:
            raise RuntimeError("change channel already has a consumer")
        self._running = True
        try:
            while True:
                item = await self._queue.get()
                if item is _CLOSE:
                    return
                await self._dispatch(handler, item)  # type: ignore[arg-type]
        finally:
            self._running = False

    async def drain(self, handler: Handler) -> int:
        """Handle everything queued right now without waiting for more."""
        n = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSE:
                # keep the close marker for run()
                self._queue.put_nowait(item)
                break
            await self._dispatch(handler, item)  # type: ignore[arg-type]
            n += 1
        return n

    async def _dispatch(self, handler: Handler, change: Change) -> None:
        try:
            out = handler(change)
            if asyncio.iscoroutine(out):
                await out
        except Exception:
            self.failed += 1
            self.consecutive_errors += 1
            logger.exception("change handler failed on %s", type(change).__name__)
            if self.consecutive_errors >= self.max_consecutive_errors:
                self.consecutive_errors = 0
                logger.warning("change feed degraded; full refresh advised")
                if self.on_degraded is not None:
                    self.on_degraded()
            return
        self.handled += 1
        self.consecutive_errors = 0
