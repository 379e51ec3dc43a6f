"""Sliding-window rate limiter for outbound Pipedrive API calls."""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Deque

log = logging.getLogger(__name__)


class RateLimiter:
    """
    Allows at most `max_requests` calls per `window_ms` milliseconds.

    Call timestamps are kept in memory for the lifetime of the instance, so every
    caller that must share a budget has to share the instance. Waiting suspends only
    the calling coroutine.
    """

    BUFFER_MS = 100  # Margin so a woken caller does not land exactly on the window edge

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        buffer_ms: int = BUFFER_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_requests < 1 or window_ms <= 0:
            raise ValueError("Rate limiter needs max_requests >= 1 and a positive window")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.buffer_ms = buffer_ms
        self._clock = clock
        self._sleep = sleep
        self._requests: Deque[float] = deque()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _prune(self, now_ms: float) -> None:
        while self._requests and now_ms - self._requests[0] >= self.window_ms:
            self._requests.popleft()

    async def wait_for_slot(self) -> None:
        """Suspends until a call slot is free, then records the call."""
        while True:
            now = self._now_ms()
            self._prune(now)
            if len(self._requests) < self.max_requests:
                self._requests.append(now)
                return

            # The window may fill up again while we sleep, hence the loop
            wait_ms = self.window_ms - (now - self._requests[0]) + self.buffer_ms
            log.debug(f"Rate limit reached ({len(self._requests)}/{self.max_requests}), waiting {wait_ms:.0f}ms")
            await self._sleep(wait_ms / 1000)

    def get_request_count(self) -> int:
        """Number of calls counted within the trailing window."""
        self._prune(self._now_ms())
        return len(self._requests)

    def reset(self) -> None:
        self._requests.clear()
