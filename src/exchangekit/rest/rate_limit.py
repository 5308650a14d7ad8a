"""Sliding-window rate gate for REST APIs. Backoff on 429."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import TYPE_CHECKING, Callable

import structlog

from exchangekit.errors import RateLimitExceeded

if TYPE_CHECKING:
    from exchangekit.config.settings import Settings

log = structlog.get_logger(__name__)


class RateGate:
    """Admit at most ``occurrences`` operations per rolling ``window_sec``.

    The first ``occurrences`` calls pass immediately. Later callers queue on an
    asyncio lock (FIFO wake-up) and the head of the queue sleeps until the
    oldest admission leaves the window.
    """

    def __init__(
        self,
        occurrences: int,
        window_sec: float,
        *,
        default_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if occurrences <= 0:
            raise ValueError("occurrences must be a positive integer")
        if window_sec <= 0:
            raise ValueError("window_sec must be positive")
        self.occurrences = occurrences
        self.window_sec = window_sec
        self.default_timeout = default_timeout
        self._clock = clock
        self._admitted: deque[float] = deque()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> RateGate:
        return cls(
            settings.rate_limit_requests,
            settings.rate_limit_window_sec,
            default_timeout=settings.rate_gate_timeout_sec,
        )

    def _evict(self, now: float) -> None:
        while self._admitted and self._admitted[0] + self.window_sec <= now:
            self._admitted.popleft()

    @property
    def available(self) -> int:
        """Slots free right now."""
        self._evict(self._clock())
        return self.occurrences - len(self._admitted)

    async def wait_to_proceed(self, timeout: float | None = None) -> bool:
        """Suspend until admitted. Return False if ``timeout`` seconds would pass first."""
        if timeout is not None and timeout < 0:
            raise ValueError("timeout must be >= 0 or None")
        deadline = None if timeout is None else self._clock() + timeout

        if self._lock.locked():
            if timeout == 0:
                return False
            try:
                if timeout is None:
                    await self._lock.acquire()
                else:
                    await asyncio.wait_for(self._lock.acquire(), timeout)
            except asyncio.TimeoutError:
                return False
        else:
            await self._lock.acquire()

        try:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._admitted) < self.occurrences:
                    self._admitted.append(now)
                    return True
                wait = self._admitted[0] + self.window_sec - now
                if deadline is not None and now + wait > deadline:
                    log.debug("rate_gate_timeout", wait=round(wait, 3), occurrences=self.occurrences)
                    return False
                await asyncio.sleep(wait)
        finally:
            self._lock.release()

    async def __aenter__(self) -> RateGate:
        if not await self.wait_to_proceed(self.default_timeout):
            raise RateLimitExceeded(
                f"rate gate timed out after {self.default_timeout}s "
                f"({self.occurrences} per {self.window_sec}s)"
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None


def backoff_on_429(retries: int = 0, base_delay: float = 1.0, max_delay: float = 60.0) -> float:
    """Return delay in seconds for next retry after a 429. Exponential backoff."""
    return min(base_delay * (2 ** retries), max_delay)
