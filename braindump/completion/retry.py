"""
Retry policy shared by every backend call site.

One tenacity AsyncRetrying loop, parameterised by an error classifier:

  - retry only errors the classifier accepts (CompletionError.retryable)
  - hard ceiling of `max_attempts` per model, plus a smaller ceiling for
    MalformedResponseError
  - wait: the backend's retry hint for RateLimitedError (capped), otherwise
    exponential backoff -- base, 2*base, 4*base, ... capped at backoff_max
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from braindump.errors import CompletionError, MalformedResponseError, RateLimitedError

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Default classifier: only typed completion errors flagged retryable."""
    return isinstance(exc, CompletionError) and exc.retryable


class RetryPolicy:

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        backoff_max: float = 10.0,
        max_retry_after_wait: float = 60.0,
        malformed_max_attempts: int = 2,
        classifier: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.max_retry_after_wait = max_retry_after_wait
        self.malformed_max_attempts = malformed_max_attempts
        self.classifier = classifier
        self._sleep = sleep
        self._backoff = wait_exponential(multiplier=backoff_base, max=backoff_max)

    def _wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after > 0:
            return min(exc.retry_after, self.max_retry_after_wait)
        return self._backoff(retry_state)

    async def run(self, fn: Callable[[], Awaitable[T]], label: str = "request") -> T:
        """
        Await `fn()` until it succeeds or the policy gives up.

        The final error is re-raised unchanged, with `attempts` set to the
        number of calls made.
        """
        attempts = 0
        malformed = 0
        attempt_stop = stop_after_attempt(self.max_attempts)

        async def attempt() -> T:
            nonlocal attempts, malformed
            attempts += 1
            try:
                return await fn()
            except CompletionError as exc:
                exc.attempts = attempts
                if isinstance(exc, MalformedResponseError):
                    malformed += 1
                raise

        def stop(retry_state: RetryCallState) -> bool:
            return attempt_stop(retry_state) or malformed >= self.malformed_max_attempts

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            logger.warning(
                f"[RetryPolicy] {label}: {type(exc).__name__}: {exc} | "
                f"attempt {retry_state.attempt_number}/{self.max_attempts} | "
                f"retrying in {retry_state.next_action.sleep:.1f}s"
            )

        retrying = AsyncRetrying(
            stop=stop,
            wait=self._wait,
            retry=retry_if_exception(self.classifier),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(attempt)
