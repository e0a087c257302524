"""Shared fixtures: fake chat-completions backend over httpx.MockTransport."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

from chatbridge.api.generator import GeneratorConfig, OpenAICompatibleGenerator
from chatbridge.config import Settings

# ---------------------------------------------------------------------------
# Wire body builders
# ---------------------------------------------------------------------------


def completion_body(
    content: str | None = "Hello!",
    *,
    tool_calls: list[dict] | None = None,
    finish_reason: str = "stop",
    model: str = "test-model",
    prompt_tokens: int = 10,
    completion_tokens: int = 5,
) -> dict[str, Any]:
    """A non-streamed chat-completions response body."""
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "model": model,
        "choices": [{"index": 0, "message": message, "finish_reason": finish_reason}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def delta_record(
    content: str | None = None,
    *,
    tool_calls: list[dict] | None = None,
    finish_reason: str | None = None,
    model: str = "test-model",
) -> dict[str, Any]:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def sse_body(*records: dict | str, done: bool = True) -> bytes:
    """Serialize records as ``data: <json>`` lines (raw strings pass through)."""
    lines = [
        f"data: {r}" if isinstance(r, str) else f"data: {json.dumps(r)}"
        for r in records
    ]
    if done:
        lines.append("data: [DONE]")
    return ("\n".join(lines) + "\n").encode()


# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------


class FakeBackend:
    """Records requests and answers them with queued responses.

    Each queued item is an httpx.Response, or a callable taking the
    request. When the queue runs dry a plain completion is returned.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responses: list[httpx.Response | Callable[[httpx.Request], httpx.Response]] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(200, json=completion_body())
        item = self.responses.pop(0)
        return item(request) if callable(item) else item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def generator_config() -> GeneratorConfig:
    return GeneratorConfig(
        base_url="http://localhost:11434",
        model="test-model",
        api_key="sk-test",
        headers={"x-extra": "1"},
    )


@pytest_asyncio.fixture
async def generator(backend, generator_config):
    """Started generator wired to the fake backend."""
    gen = OpenAICompatibleGenerator(generator_config, transport=backend.transport)
    await gen.start()
    yield gen
    await gen.close()


@pytest.fixture
def settings(monkeypatch) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    for name in (
        "OPENAI_API_KEY", "OPENAI_BASE_URL", "OLLAMA_BASE_URL", "OLLAMA_API_KEY",
        "CUSTOM_LLM_API_KEY", "CUSTOM_LLM_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    return Settings(_env_file=None, model="test-model")
