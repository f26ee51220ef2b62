"""Minimum-interval throttling for outbound AI Horde calls.

Two serialized queues share one external rate budget:

* background: scheduler traffic (submit, poll, fetch results, downloads)
* interactive: user-initiated calls (cancel, user info, estimates)

Callers on the same queue proceed strictly in arrival order.  The queues
never block each other directly, but an interactive call also stamps the
background queue, so a background call issued right after an interactive
one still waits out the full interval.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

PRIORITY_BACKGROUND = "background"
PRIORITY_INTERACTIVE = "interactive"


class DualThrottle:
    """Pair of FIFO throttle queues with a shared minimum interval.

    ``clock`` and ``sleep`` are injectable so tests can drive time by hand.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        # asyncio.Lock wakes waiters in FIFO order
        self._background_lock = asyncio.Lock()
        self._interactive_lock = asyncio.Lock()
        self._background_last: float | None = None
        self._interactive_last: float | None = None

    @property
    def background_last(self) -> float | None:
        return self._background_last

    @property
    def interactive_last(self) -> float | None:
        return self._interactive_last

    async def _wait_out(self, last: Callable[[], float | None], queue: str) -> None:
        # Re-read the stamp after every sleep: the other queue may move it
        while True:
            stamp = last()
            if stamp is None:
                return
            wait = self.min_interval - (self._clock() - stamp)
            if wait <= 0:
                return
            logger.debug("[RateLimit] %s queue waiting %.3fs", queue, wait)
            await self._sleep(wait)

    async def background(self) -> None:
        """Wait for a background slot; stamps only the background queue."""
        async with self._background_lock:
            await self._wait_out(lambda: self._background_last, PRIORITY_BACKGROUND)
            self._background_last = self._clock()

    async def interactive(self) -> None:
        """Wait for an interactive slot; stamps both queues."""
        async with self._interactive_lock:
            await self._wait_out(lambda: self._interactive_last, PRIORITY_INTERACTIVE)
            now = self._clock()
            self._interactive_last = now
            self._background_last = now

    async def acquire(self, priority: str = PRIORITY_BACKGROUND) -> None:
        if priority == PRIORITY_INTERACTIVE:
            await self.interactive()
        elif priority == PRIORITY_BACKGROUND:
            await self.background()
        else:
            raise ValueError(f"Unknown throttle priority: {priority!r}")
