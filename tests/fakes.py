"""Test doubles: fake clock, mock-transport helpers, fake completion client."""
from __future__ import annotations

import asyncio
import json
from typing import Callable, Optional, Union

import httpx

from braindump.completion.client import CompletionClient
from braindump.config import CompletionSettings


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeCompletionClient:
    """Stand-in for CompletionClient at the pipeline-stage seam."""

    def __init__(
        self,
        responder: Callable[[str], Union[str, BaseException]],
        available: bool = True,
    ) -> None:
        self.responder = responder
        self.available = available
        self.prompts: list[str] = []

    def is_available(self) -> bool:
        return self.available

    async def complete(self, prompt, options=None, cancel_event=None) -> str:
        self.prompts.append(prompt)
        result = self.responder(prompt)
        if isinstance(result, BaseException):
            raise result
        return result


def chat_response(text: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"choices": [{"message": {"content": text}}]})


def error_response(status_code: int, message: str, headers: Optional[dict] = None) -> httpx.Response:
    return httpx.Response(status_code, json={"error": {"message": message}}, headers=headers)


def request_body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def make_settings(**overrides) -> CompletionSettings:
    values = {"api_key": "test-key", "models": ["model-a", "model-b"]}
    values.update(overrides)
    return CompletionSettings(**values)


def make_client(
    handler: Callable[[httpx.Request], httpx.Response],
    clock: Optional[FakeClock] = None,
    **overrides,
) -> CompletionClient:
    clock = clock or FakeClock()
    return CompletionClient(
        make_settings(**overrides),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        clock=clock,
        sleep=clock.sleep,
    )
