"""Shared pytest fixtures."""

from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from config.config_loader import AppConfig, ModelConfig, PromptsConfig, RetryConfig, load_config
from deliberation.emitter import StreamingEmitter
from deliberation.events import Event
from deliberation.models import SearchResult
from deliberation.providers.base import ChatMessage, ReasoningConfig, Token, UpstreamClient
from deliberation.retry import RetryController

Reply = str | Exception | list[Token]


class ScriptedClient(UpstreamClient):
    """Test double upstream. Replies are consumed in order, then `fallback` answers."""

    def __init__(
        self,
        replies: list[Reply] | None = None,
        fallback: Callable[[list[ChatMessage]], Reply] | None = None,
        provider_name: str = "chat",
    ) -> None:
        self._replies = list(replies or [])
        self._fallback = fallback or (lambda messages: "A plain scripted reply for testing purposes.")
        self._name = provider_name
        self.calls: list[dict] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "scripted-model"

    def _next(self, messages: list[ChatMessage]) -> Reply:
        reply = self._replies.pop(0) if self._replies else self._fallback(messages)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def _record(self, messages, stream, temperature, max_tokens, reasoning, request_id) -> None:
        self.calls.append({
            "messages": messages,
            "stream": stream,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "reasoning": reasoning,
            "request_id": request_id,
        })

    async def complete_once(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.4,
        max_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
        request_id: str | None = None,
    ) -> str:
        self._record(messages, False, temperature, max_tokens, reasoning, request_id)
        reply = self._next(messages)
        if isinstance(reply, list):
            return "".join(t.text for t in reply if t.kind == "content")
        return reply

    async def stream_tokens(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[Token]:
        self._record(messages, True, temperature, max_tokens, reasoning, request_id)
        reply = self._next(messages)
        if isinstance(reply, str):
            words = reply.split(" ")
            reply = [Token("content", w if i == 0 else f" {w}") for i, w in enumerate(words)]
        return _iterate(reply)

    def user_prompts(self) -> list[str]:
        return [str(call["messages"][-1]["content"]) for call in self.calls]


class FixedCoin:
    """Stands in for random.Random: below 0.5 is Heads (Blue first)."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


class StubLookup:
    """WebLookup that answers every query with one side-tagged result."""

    def __init__(self) -> None:
        self.queries: list[str] = []

    async def search(self, query: str, limit: int = 3) -> list[SearchResult]:
        self.queries.append(query)
        side = "for" if "benefits" in query else "against"
        return [SearchResult(f"Source {side}", f"https://example.org/{side}", "snippet")]


async def _iterate(tokens: list[Token]) -> AsyncIterator[Token]:
    for token in tokens:
        yield token


async def _no_sleep(seconds: float) -> None:
    return None


async def collect(emitter: StreamingEmitter) -> list[Event]:
    return [event async for event in emitter]


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    config = load_config()
    config.defaults.output_dir = tmp_path / "output"
    return config


@pytest.fixture
def prompts(app_config: AppConfig) -> PromptsConfig:
    return app_config.prompts


@pytest.fixture
def retry() -> RetryController:
    return RetryController(RetryConfig(), sleep=_no_sleep)


@pytest.fixture
def emitter() -> StreamingEmitter:
    # Large buffer so controllers can run to completion before the test drains events
    return StreamingEmitter(maxsize=1000)


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="chat",
        sdk="openai",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url="https://example.invalid/v1",
    )
