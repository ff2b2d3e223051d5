"""Outbound call admission control.

A sliding-window counter caps how many calls start per window, and a
semaphore caps how many are in flight at once. Callers wait cooperatively;
a call that would have to wait longer than `max_delay` is rejected.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Optional, TypeVar

from ingestion.core.errors import RateLimitRejected

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_CALLS = 280
DEFAULT_WINDOW_SECONDS = 30.0
DEFAULT_CONCURRENCY = 48
DEFAULT_MAX_DELAY_SECONDS = 30.0


class RateLimiter:
    def __init__(
        self,
        max_calls: int = DEFAULT_MAX_CALLS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        if max_calls <= 0 or window_seconds <= 0 or concurrency <= 0:
            raise ValueError("max_calls, window_seconds and concurrency must be positive")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.concurrency = concurrency
        self.max_delay = max_delay
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._calls: Deque[float] = deque()
        self._semaphore = asyncio.Semaphore(concurrency)
        self._admission = asyncio.Lock()
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def calls_in_window(self) -> int:
        self._prune(self._clock())
        return len(self._calls)

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._calls and self._calls[0] <= horizon:
            self._calls.popleft()

    def _reject(self, wait: float) -> RateLimitRejected:
        return RateLimitRejected(f"Rate limit wait of {wait:.1f}s exceeds max delay {self.max_delay:.1f}s")

    async def _reserve(self, started: float) -> float:
        """Claim the next start time in the window; returns how long to wait for it."""
        # The lock only orders reservations; nobody sleeps while holding it.
        async with self._admission:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.max_calls:
                at = now
            else:
                at = max(now, self._calls[-self.max_calls] + self.window_seconds)
            if at - started > self.max_delay:
                raise self._reject(at - started)
            self._calls.append(at)
        return at - now

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one admitted call for the duration of the block.

        The whole wait, for a concurrency slot and for room in the window,
        counts against `max_delay`.
        """
        started = self._clock()
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self.max_delay)
        except asyncio.TimeoutError:
            raise self._reject(self._clock() - started) from None
        try:
            wait = await self._reserve(started)
            if wait > 0:
                logger.debug(f"Rate limit reached ({self.max_calls}/{self.window_seconds}s); waiting {wait:.2f}s")
                await self._sleep(wait)
            self._in_flight += 1
            try:
                yield
            finally:
                self._in_flight -= 1
        finally:
            self._semaphore.release()

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        async with self.slot():
            return await fn(*args, **kwargs)
