"""
Rate-limit bookkeeping for one CompletionClient.

Two independent brakes share one lock-guarded state object:

  - a self-imposed rolling window (N requests per W seconds); exceeding it
    pauses the caller for a short cooldown before the request goes out
  - a cooldown flag set either by the backend (HTTP 429 + Retry-After) or by
    the client itself after too many consecutive failed calls; while it is
    active new logical calls fail fast with RateLimitedError
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Awaitable, Callable

from loguru import logger

from braindump.errors import RateLimitedError


@dataclass
class RateLimitState:
    last_request_time: float = 0.0
    request_count_in_window: int = 0
    window_started_at: float = 0.0
    throttled_until: float = 0.0          # self-throttle pause (window exceeded)
    is_rate_limited: bool = False
    rate_limited_until: float = 0.0
    limited_by_backend: bool = False
    consecutive_error_count: int = 0


class RateLimiter:
    """Single synchronisation point for every RateLimitState mutation."""

    def __init__(
        self,
        requests_per_window: int = 5,
        window_seconds: float = 5.0,
        self_cooldown: float = 5.0,
        error_threshold: int = 3,
        error_cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.requests_per_window = requests_per_window
        self.window_seconds = window_seconds
        self.self_cooldown = self_cooldown
        self.error_threshold = error_threshold
        self.error_cooldown = error_cooldown
        self._clock = clock
        self._sleep = sleep
        self._state = RateLimitState()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> RateLimitState:
        """A copy; mutate only through the methods below."""
        return replace(self._state)

    def remaining_cooldown(self) -> float:
        """Seconds until the cooldown flag lifts (0 when not limited)."""
        if not self._state.is_rate_limited:
            return 0.0
        return max(0.0, self._state.rate_limited_until - self._clock())

    # --- Per logical call ----------------------------------------------------

    async def check(self) -> None:
        """Fail fast if a cooldown is active; clear it once it has elapsed."""
        async with self._lock:
            s = self._state
            if not s.is_rate_limited:
                return
            remaining = s.rate_limited_until - self._clock()
            if remaining > 0:
                raise RateLimitedError(
                    f"Rate limited for another {remaining:.1f}s",
                    retry_after=remaining,
                    self_imposed=not s.limited_by_backend,
                )
            s.is_rate_limited = False
            s.limited_by_backend = False
            logger.info("[RateLimiter] Cooldown elapsed, resuming requests")

    # --- Per attempt ---------------------------------------------------------

    async def acquire(self) -> None:
        """Reserve a slot in the rolling window, pausing if the window is full."""
        while True:
            async with self._lock:
                s = self._state
                now = self._clock()
                wait = s.throttled_until - now
                if wait <= 0:
                    if now - s.window_started_at >= self.window_seconds:
                        s.window_started_at = now
                        s.request_count_in_window = 0
                    if s.request_count_in_window < self.requests_per_window:
                        s.request_count_in_window += 1
                        s.last_request_time = now
                        return
                    # Window exhausted: pause, then open a fresh window
                    wait = self.self_cooldown
                    s.throttled_until = now + wait
                    s.window_started_at = s.throttled_until
                    s.request_count_in_window = 0
                    logger.warning(
                        f"[RateLimiter] {self.requests_per_window} requests in "
                        f"{self.window_seconds:.0f}s -- self-throttling for {wait:.1f}s"
                    )
            await self._sleep(wait)

    async def mark_backend_limited(self, retry_after: float) -> None:
        async with self._lock:
            s = self._state
            s.is_rate_limited = True
            s.limited_by_backend = True
            s.rate_limited_until = max(s.rate_limited_until, self._clock() + retry_after)
        logger.warning(f"[RateLimiter] Backend rate limit, retry after {retry_after:.0f}s")

    # --- Outcome of a logical call ------------------------------------------

    async def record_success(self) -> None:
        async with self._lock:
            s = self._state
            s.consecutive_error_count = 0
            if s.is_rate_limited and self._clock() >= s.rate_limited_until:
                s.is_rate_limited = False
                s.limited_by_backend = False

    async def record_failure(self) -> None:
        async with self._lock:
            s = self._state
            s.consecutive_error_count += 1
            if s.consecutive_error_count <= self.error_threshold:
                return
            s.is_rate_limited = True
            s.limited_by_backend = False
            s.rate_limited_until = max(s.rate_limited_until, self._clock() + self.error_cooldown)
            failures = s.consecutive_error_count
            s.consecutive_error_count = 0
        logger.warning(
            f"[RateLimiter] {failures} consecutive failed calls -- "
            f"cooling down for {self.error_cooldown:.0f}s"
        )
