"""OpenAI-compatible upstream (OpenAI, OpenRouter, xAI ...) using the openai SDK with native async."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from deliberation.providers.base import (
    ChatMessage,
    ProviderError,
    RateLimited,
    ReasoningConfig,
    Token,
    UpstreamClient,
    UpstreamError,
    reset_hint,
)

logger = logging.getLogger(__name__)


def _text_of(value: Any) -> str:
    """Flatten the string-or-parts shapes OpenRouter uses for content and reasoning."""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_text_of(part) for part in value)
    if isinstance(value, dict):
        if isinstance(value.get("text"), str):
            return value["text"]
        if isinstance(value.get("content"), str):
            return value["content"]
    return ""


def _field(obj: Any, key: str) -> Any:
    value = getattr(obj, key, None)
    if value is None:
        extra = getattr(obj, "model_extra", None) or {}
        value = extra.get(key)
    return value


class OpenAIProvider(UpstreamClient):
    """Chat-completions upstream via the openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        # Retries are owned by RetryController, not the SDK.
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _request_kwargs(
        self,
        messages: list[ChatMessage],
        temperature: float,
        max_tokens: int | None,
        reasoning: ReasoningConfig | None,
        request_id: str | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens or self._config.max_tokens,
        }
        if reasoning is not None:
            kwargs["extra_body"] = {"reasoning": reasoning}
        if request_id:
            kwargs["extra_headers"] = {"X-Request-Id": request_id}
        return kwargs

    def _translate(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.RateLimitError):
            headers = exc.response.headers if exc.response is not None else None
            return RateLimited(self._config.name, str(exc.body or exc.message), reset_hint(exc.body, headers, time.time()))
        if isinstance(exc, openai.APIStatusError):
            return UpstreamError(self._config.name, exc.status_code, str(exc.body or exc.message))
        if isinstance(exc, TimeoutError):
            return UpstreamError(self._config.name, None, f"Request timed out after {self._config.timeout_sec}s")
        return UpstreamError(self._config.name, None, f"API call failed: {exc}")

    async def complete_once(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.4,
        max_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
        request_id: str | None = None,
    ) -> str:
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    **self._request_kwargs(messages, temperature, max_tokens, reasoning, request_id)
                ),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise self._translate(exc) from exc

        latency = time.monotonic() - start
        choice = response.choices[0] if response.choices else None
        if choice is None:
            return ""
        text = _text_of(choice.message.content).strip()
        if not text:
            # Some reasoning models put everything in the reasoning channel.
            text = _text_of(_field(choice.message, "reasoning")).strip()

        logger.info(
            "OpenAI %s: %.2fs, %s tokens",
            self._config.name,
            latency,
            response.usage.total_tokens if response.usage else None,
        )
        return text

    async def stream_tokens(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[Token]:
        try:
            stream = await asyncio.wait_for(
                self._client.chat.completions.create(
                    stream=True,
                    **self._request_kwargs(messages, temperature, max_tokens, reasoning, request_id),
                ),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise self._translate(exc) from exc
        return self._iterate(stream)

    async def _iterate(self, stream: Any) -> AsyncIterator[Token]:
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                reasoning_text = _text_of(_field(delta, "reasoning"))
                if reasoning_text:
                    yield Token("reasoning", reasoning_text)
                content_text = _text_of(delta.content)
                if content_text:
                    yield Token("content", content_text)
        except openai.APIError as exc:
            raise self._translate(exc) from exc
        finally:
            await stream.close()
