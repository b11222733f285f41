"""Fixed-interval pacing gate used between upstream calls."""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional


class FixedIntervalGate:
    """Let one caller through at most every ``interval`` seconds.

    The first ``wait()`` passes immediately. Clock and sleep are injectable
    so tests can run without real wall-clock delays.
    """

    def __init__(
        self,
        interval: float = 0.25,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._last is not None:
                delay = self._last + self.interval - now
                if delay > 0:
                    await self._sleep(delay)
                    now = self._clock()
            self._last = now
