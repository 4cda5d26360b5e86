"""Per-provider request rate limiting.

A sliding window of ``max_requests`` per ``per_seconds``.  A fixed
inter-request delay is the ``max_requests=1`` case (Setlist.fm).
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable

import structlog

log = structlog.get_logger(__name__)


class RateLimiter:
    """Async sliding-window limiter shared by every request of one client."""

    def __init__(
        self,
        max_requests: int,
        per_seconds: float,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1 or per_seconds <= 0:
            msg = "max_requests must be >= 1 and per_seconds > 0"
            raise ValueError(msg)
        self.max_requests = max_requests
        self.per_seconds = per_seconds
        self.name = name
        self._clock = clock
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def for_spotify(cls) -> RateLimiter:
        return cls(10, 1.0, name="spotify")

    @classmethod
    def for_ticketmaster(cls) -> RateLimiter:
        # Discovery API: 5 requests per second per key.
        return cls(5, 1.0, name="ticketmaster")

    @classmethod
    def for_setlistfm(cls) -> RateLimiter:
        # 2 requests per second, no bursts.
        return cls(1, 0.5, name="setlistfm")

    def _prune(self, now: float) -> None:
        while self._sent and now - self._sent[0] >= self.per_seconds:
            self._sent.popleft()

    async def acquire(self) -> None:
        """Wait until one more request fits in the window, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._sent) < self.max_requests:
                    self._sent.append(now)
                    return
                wait = self.per_seconds - (now - self._sent[0])
                log.debug("rate_limit_wait", limiter=self.name, wait=round(wait, 3))
                await asyncio.sleep(wait)
