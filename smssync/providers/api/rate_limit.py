"""Client-side sliding-window rate limiter.

Some providers throttle hard and ban keys that exceed their quota (GoGetSMS
allows 10 requests per 60 s).  :class:`SlidingWindowRateLimiter` keeps the
timestamps of recent requests and makes :meth:`acquire` wait until a slot
frees up, so callers never have to count requests themselves.

The limiter is safe for concurrent coroutines on one event loop: an
:class:`asyncio.Lock` serialises slot accounting.

Typical usage::

    limiter = SlidingWindowRateLimiter(max_calls=10, window_s=60.0)
    await limiter.acquire()   # returns immediately or sleeps until a slot opens
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

__all__ = ["SlidingWindowRateLimiter"]

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Allow at most *max_calls* acquisitions in any *window_s* seconds.

    Args:
        max_calls: Requests allowed per window (≥ 1).
        window_s: Window length in seconds (> 0).
        clock: Monotonic clock; injectable for tests.
        sleep: Coroutine used to wait; injectable for tests.

    Raises:
        ValueError: On non-positive limits.
    """

    def __init__(
        self,
        max_calls: int,
        window_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_calls < 1:
            raise ValueError(f"max_calls must be ≥ 1, got {max_calls!r}")
        if window_s <= 0:
            raise ValueError(f"window_s must be > 0, got {window_s!r}")
        self._max_calls = max_calls
        self._window_s = window_s
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    @property
    def in_window(self) -> int:
        """Number of acquisitions still counted against the current window."""
        self._evict(self._clock())
        return len(self._calls)

    async def acquire(self) -> None:
        """Wait until a request may be sent, then record it."""
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._calls) < self._max_calls:
                    self._calls.append(now)
                    return
                wait = self._calls[0] + self._window_s - now
                logger.debug("Rate limiter full (%d/%d); waiting %.1f s.", len(self._calls), self._max_calls, wait)
                await self._sleep(max(wait, 0.0))

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self._window_s:
            self._calls.popleft()
