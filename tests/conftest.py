"""Shared pytest fixtures for chatengine tests.

Fixture Organization:
    - Config fixtures: isolated EngineConfig, autouse singleton reset
    - HTTP fixtures: httpx.MockTransport wired into HttpTransport, with a
      multi-chunk byte stream so decoders see realistic chunk boundaries
    - Policy fixtures: RetryPolicy with an observable, instant sleep
"""

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Callable, Union
from unittest.mock import AsyncMock

import httpx
import pytest

from chatengine.config import EngineConfig, reset_config
from chatengine.retry import RetryPolicy
from chatengine.transport import HttpTransport

FIXED_NOW = datetime(2023, 4, 1, 12, 0, 0, tzinfo=timezone.utc)

_CONFIG_ENV_VARS = (
    "OPENAI_API_KEY",
    "OPENAI_API_BASE",
    "WEB_API_PREFIX",
    "WEB_ACCESS_TOKEN",
    "CHAT_MODEL",
    "PROMPT_MODEL",
    "TEMPERATURE",
    "TOP_P",
    "MAX_TOKENS",
    "SYSTEM_MESSAGE",
    "MAX_RETRY_ATTEMPTS",
)


# =============================================================================
# Stream helpers
# =============================================================================


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered as a fixed sequence of byte chunks."""

    def __init__(self, chunks: Iterable[bytes]):
        self.chunks = list(chunks)
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def sse(*records: Union[dict, str], done: bool = True) -> list[bytes]:
    """Encode records as ``data: `` frames, one chunk per frame."""
    chunks = []
    for record in records:
        payload = record if isinstance(record, str) else json.dumps(record)
        chunks.append(f"data: {payload}\n\n".encode("utf-8"))
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


def chat_frames(*fragments: str, role: str = "assistant") -> list[bytes]:
    """Chat-completion delta stream: role announcement, then content."""
    records: list[dict] = [{"choices": [{"delta": {"role": role}}]}]
    records.extend({"choices": [{"delta": {"content": f}}]} for f in fragments)
    return sse(*records)


def prompt_frames(*fragments: str) -> list[bytes]:
    """Prompt-completion stream carrying ``choices[0].text``."""
    return sse(*({"choices": [{"text": f}]} for f in fragments))


def web_frames(
    *snapshots: str,
    conversation_id: str = "conv-server-1",
    message_id: str = "msg-server-1",
) -> list[bytes]:
    """Web conversation stream repeating the whole reply in every frame."""
    records = [
        {
            "conversation_id": conversation_id,
            "message": {
                "id": message_id,
                "author": {"role": "assistant"},
                "content": {"content_type": "text", "parts": [text]},
            },
        }
        for text in snapshots
    ]
    return sse(*records)


def stream_response(chunks: Iterable[bytes], status: int = 200) -> httpx.Response:
    return httpx.Response(status, stream=ChunkedStream(chunks))


def error_response(status: int, body: Any = None, headers: dict | None = None) -> httpx.Response:
    if body is None:
        return httpx.Response(status, headers=headers)
    return httpx.Response(status, json=body, headers=headers)


class ScriptedHandler:
    """MockTransport handler replaying responses in order and recording requests.

    Entries may be responses or callables taking the request.
    """

    def __init__(self, *responses: Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        response = self.responses.pop(0)
        if callable(response) and not isinstance(response, httpx.Response):
            return response(request)
        return response

    @property
    def payloads(self) -> list[Any]:
        return [json.loads(r.content) if r.content else None for r in self.requests]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch):
    """Reset the config singleton and strip config env vars around each test."""
    for var in _CONFIG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config() -> EngineConfig:
    """EngineConfig built from defaults only (no .env file)."""
    return EngineConfig(_env_file=None)


@pytest.fixture
def retry_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def fast_retry(retry_sleep) -> RetryPolicy:
    """RetryPolicy whose sleeps return immediately and are recorded."""
    return RetryPolicy(max_attempts=3, sleep=retry_sleep, jitter=lambda: 0.0)


@pytest.fixture
def make_transport():
    """Factory: HttpTransport backed by httpx.MockTransport(handler)."""
    created: list[HttpTransport] = []

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> HttpTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpTransport(client=client)
        created.append(transport)
        return transport

    return factory


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW
