"""
Completion Client
------------------
The single gateway to the text-generation backend (an OpenAI-compatible
chat-completions endpoint such as OpenRouter).  Every pipeline stage calls
complete(); nothing outside this module sees a wire structure.

One logical call:

    rate check        fail fast while a cooldown is active
        |
        v
    model loop        ModelUnavailableError -> next model in priority order
        |             (bounded by max_model_rotations; the new model sticks)
        v
    retry policy      tenacity loop, max_retries attempts per model
        |
        v
    attempt           self-throttle window -> HTTP request (timeout, cancel)
        |
        v
    classify          401/403 auth | model signature | 429 | 4xx | 5xx |
                      timeout | network | malformed body

Callers get either the completion text or one CompletionError subclass.
After too many consecutive failed calls the client cools down on its own.
"""
from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Optional

import httpx
from langsmith import traceable
from loguru import logger

from braindump.completion.rate_limit import RateLimiter
from braindump.completion.retry import RetryPolicy
from braindump.completion.streaming import iter_stream_events
from braindump.config import CompletionSettings
from braindump.errors import (
    AnalysisCancelled,
    AuthFailureError,
    CompletionError,
    CompletionTimeoutError,
    MalformedResponseError,
    ModelUnavailableError,
    RateLimitedError,
    RequestRejectedError,
    TransientServerError,
)
from braindump.utils.concurrency import raise_if_cancelled

# Substrings (lower-cased) that mark a failure as specific to the model
MODEL_FAILURE_SIGNATURES = (
    "model_not_found",
    "model is overloaded",
    "not available",
    "currently unavailable",
    "invalid model",
    "no endpoints found",
)

ChunkCallback = Callable[[str, bool], None]


@dataclass(frozen=True)
class CompletionOptions:
    """Per-call overrides; None falls back to CompletionSettings."""

    model: Optional[str] = None          # pins the model (no rotation)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None


@dataclass
class _StreamProgress:
    fragments: int = 0


def is_model_failure(message: str) -> bool:
    lowered = message.lower()
    return any(sig in lowered for sig in MODEL_FAILURE_SIGNATURES)


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Retry-After as delta-seconds or HTTP date; `default` when absent/invalid."""
    if not value:
        return default
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_message(body: str) -> str:
    """Pull `error.message` out of a JSON error body, else return the body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body.strip()
    if isinstance(data, dict) and data.get("error"):
        err = data["error"]
        if isinstance(err, dict):
            return str(err.get("message") or err)
        return str(err)
    return body.strip()


class CompletionClient:
    """
    Resilient async client for the completion backend.

    Usage:
        async with CompletionClient(settings.completion) as client:
            text = await client.complete("Summarise ...")

    `http_client`, `clock` and `sleep` are injectable so tests can drive the
    client with httpx.MockTransport and a fake clock.
    """

    def __init__(
        self,
        settings: Optional[CompletionSettings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or CompletionSettings()
        self._http = http_client
        self._owns_http = http_client is None
        self._model_index = 0
        s = self.settings
        self.rate_limiter = RateLimiter(
            requests_per_window=s.rate_limit_requests,
            window_seconds=s.rate_limit_window,
            self_cooldown=s.self_cooldown,
            error_threshold=s.error_threshold,
            error_cooldown=s.error_cooldown,
            clock=clock,
            sleep=sleep,
        )
        self.retry_policy = RetryPolicy(
            max_attempts=s.max_retries,
            backoff_base=s.backoff_base,
            backoff_max=s.backoff_max,
            max_retry_after_wait=s.max_retry_after_wait,
            malformed_max_attempts=s.malformed_max_attempts,
            sleep=sleep,
        )

    # --- Lifecycle -----------------------------------------------------------

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.timeout))
        return self._http

    # --- Public API ----------------------------------------------------------

    @property
    def current_model(self) -> str:
        return self.settings.models[self._model_index]

    def is_available(self) -> bool:
        """True when a credential is configured and no cooldown is active."""
        if not self.settings.api_key:
            return False
        return self.rate_limiter.remaining_cooldown() <= 0

    @traceable(name="completion", run_type="llm")
    async def complete(
        self,
        prompt: str,
        options: Optional[CompletionOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """Blocking completion; returns the stripped response text."""
        return await self._call(prompt, options or CompletionOptions(), cancel_event, None)

    async def complete_streaming(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        options: Optional[CompletionOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> str:
        """
        Streamed completion.

        `on_chunk(fragment, False)` fires for every text delta, then
        `on_chunk("", True)` exactly once when the stream completes.
        Returns the full text.  Once a fragment has been delivered a later
        failure is not retried, so the caller never sees text twice.
        """
        text = await self._call(prompt, options or CompletionOptions(), cancel_event, on_chunk)
        on_chunk("", True)
        return text

    # --- Logical call --------------------------------------------------------

    async def _call(
        self,
        prompt: str,
        options: CompletionOptions,
        cancel_event: Optional[asyncio.Event],
        on_chunk: Optional[ChunkCallback],
    ) -> str:
        if not self.settings.api_key:
            raise AuthFailureError("No API credential configured")
        raise_if_cancelled(cancel_event, "completion")
        await self.rate_limiter.check()

        start = time.perf_counter()
        try:
            text = await self._with_model_rotation(prompt, options, cancel_event, on_chunk)
        except CompletionError as exc:
            await self.rate_limiter.record_failure()
            logger.error(
                f"[CompletionClient] Call failed after {exc.attempts} attempt(s): "
                f"{type(exc).__name__}: {exc}"
            )
            raise
        await self.rate_limiter.record_success()

        logger.info(
            f"[CompletionClient] Done | model={options.model or self.current_model} "
            f"| prompt={len(prompt):,} chars | response={len(text):,} chars "
            f"| {time.perf_counter() - start:.2f}s"
        )
        return text

    async def _with_model_rotation(
        self,
        prompt: str,
        options: CompletionOptions,
        cancel_event: Optional[asyncio.Event],
        on_chunk: Optional[ChunkCallback],
    ) -> str:
        pinned = options.model is not None
        model = options.model or self.current_model
        rotations = 0
        while True:
            progress = _StreamProgress()

            async def attempt() -> str:
                coro = self._attempt(prompt, options, model, on_chunk, progress)
                try:
                    return await _cancellable(coro, cancel_event)
                except CompletionError as exc:
                    if progress.fragments:
                        exc.retryable = False
                    raise

            try:
                return await self.retry_policy.run(attempt, label=model)
            except ModelUnavailableError:
                if pinned or progress.fragments or rotations >= self.settings.rotation_limit:
                    raise
                rotations += 1
                previous, model = model, self._rotate_from(model)
                logger.warning(
                    f"[CompletionClient] {previous} unavailable -- rotating to {model} "
                    f"({rotations}/{self.settings.rotation_limit})"
                )

    def _rotate_from(self, failed_model: str) -> str:
        models = self.settings.models
        idx = models.index(failed_model) if failed_model in models else self._model_index
        self._model_index = (idx + 1) % len(models)
        return models[self._model_index]

    # --- Single attempt ------------------------------------------------------

    async def _attempt(
        self,
        prompt: str,
        options: CompletionOptions,
        model: str,
        on_chunk: Optional[ChunkCallback],
        progress: _StreamProgress,
    ) -> str:
        await self.rate_limiter.acquire()
        logger.debug(f"[CompletionClient] -> {model} | prompt={len(prompt):,} chars")
        if on_chunk is None:
            send = self._send(prompt, options, model)
            deadline = self.settings.timeout
        else:
            send = self._send_streaming(prompt, options, model, on_chunk, progress)
            deadline = self.settings.stream_timeout
        try:
            return await asyncio.wait_for(send, timeout=deadline)
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise CompletionTimeoutError(
                f"Request timed out after {deadline:g}s", model=model
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientServerError(f"Network error: {exc}", model=model) from exc

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.settings.app_url,
            "X-Title": self.settings.app_title,
        }

    def _payload(self, prompt: str, options: CompletionOptions, model: str, stream: bool) -> dict:
        s = self.settings
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": options.system_prompt or s.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": s.temperature if options.temperature is None else options.temperature,
            "max_tokens": options.max_tokens or s.max_tokens,
        }
        if stream:
            payload["stream"] = True
        return payload

    async def _send(self, prompt: str, options: CompletionOptions, model: str) -> str:
        response = await self._client().post(
            self.settings.base_url,
            headers=self._headers(),
            json=self._payload(prompt, options, model, stream=False),
        )
        if response.status_code >= 400:
            await self._raise_for_status(response.status_code, response.text, response.headers, model)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Response body is not JSON", model=model) from exc
        if isinstance(data, dict) and data.get("error"):
            status = response.status_code
            err = data["error"]
            if isinstance(err, dict) and isinstance(err.get("code"), int):
                status = err["code"]
            await self._raise_for_status(status, json.dumps(data), response.headers, model)
        return _extract_content(data, model)

    async def _send_streaming(
        self,
        prompt: str,
        options: CompletionOptions,
        model: str,
        on_chunk: ChunkCallback,
        progress: _StreamProgress,
    ) -> str:
        parts: list[str] = []
        async with self._client().stream(
            "POST",
            self.settings.base_url,
            headers=self._headers(),
            json=self._payload(prompt, options, model, stream=True),
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                await self._raise_for_status(response.status_code, body, response.headers, model)

            async for event in iter_stream_events(response.aiter_lines()):
                if event.error:
                    if is_model_failure(event.error):
                        raise ModelUnavailableError(event.error, model=model)
                    raise TransientServerError(f"Stream error: {event.error}", model=model)
                if event.text:
                    parts.append(event.text)
                    progress.fragments += 1
                    on_chunk(event.text, False)

        text = "".join(parts)
        if not text.strip():
            raise MalformedResponseError("Stream ended without content", model=model)
        return text

    # --- Classification ------------------------------------------------------

    async def _raise_for_status(
        self,
        status: int,
        body: str,
        headers: httpx.Headers,
        model: str,
    ) -> None:
        message = _error_message(body) or f"HTTP {status}"
        if status in (401, 403):
            raise AuthFailureError(f"Authentication failed ({status}): {message}", model=model)
        if is_model_failure(message):
            raise ModelUnavailableError(message, model=model)
        if status == 429:
            retry_after = parse_retry_after(
                headers.get("retry-after"), self.settings.default_retry_after
            )
            await self.rate_limiter.mark_backend_limited(retry_after)
            raise RateLimitedError(
                f"Backend rate limit (429): {message}", retry_after=retry_after, model=model
            )
        if 400 <= status < 500:
            raise RequestRejectedError(
                f"Request rejected ({status}): {message}", status_code=status, model=model
            )
        raise TransientServerError(f"Server error ({status}): {message}", status_code=status, model=model)


def _extract_content(data: Any, model: str) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise MalformedResponseError("Response has no choices[0].message.content", model=model) from exc
    if not isinstance(content, str) or not content.strip():
        raise MalformedResponseError("Response content is empty", model=model)
    return content.strip()


async def _cancellable(coro: Coroutine[Any, Any, str], cancel_event: Optional[asyncio.Event]) -> str:
    """Await `coro`, abandoning it (and raising AnalysisCancelled) if the event fires."""
    if cancel_event is None:
        return await coro
    if cancel_event.is_set():
        coro.close()
        raise AnalysisCancelled("Cancelled before the request was sent")

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()
        raise AnalysisCancelled("Cancelled while waiting for the backend")
    finally:
        for pending in (task, waiter):
            if not pending.done():
                pending.cancel()
        # Drain so an abandoned request never surfaces "exception was never retrieved"
        await asyncio.gather(task, waiter, return_exceptions=True)
