"""Anthropic Claude upstream using the anthropic SDK with native async."""

import asyncio
import base64
import logging
import os
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from deliberation.providers.base import (
    ChatMessage,
    ProviderError,
    RateLimited,
    ReasoningConfig,
    Token,
    UpstreamClient,
    UpstreamError,
    decode_data_url,
    reset_hint,
    split_system,
)

logger = logging.getLogger(__name__)


def _convert_part(part: dict[str, Any]) -> dict[str, Any]:
    if part.get("type") == "image_url":
        mime, data = decode_data_url(part["image_url"]["url"])
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": mime,
                "data": base64.b64encode(data).decode("ascii"),
            },
        }
    return {"type": "text", "text": str(part.get("text", ""))}


def _convert_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    converted = []
    for msg in messages:
        content = msg["content"]
        if isinstance(content, list):
            content = [_convert_part(p) for p in content]
        converted.append({"role": msg["role"], "content": content})
    return converted


class AnthropicProvider(UpstreamClient):
    """Anthropic Claude upstream via the anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, max_retries=0)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _request_kwargs(
        self,
        messages: list[ChatMessage],
        temperature: float,
        max_tokens: int | None,
        request_id: str | None,
    ) -> dict[str, Any]:
        system, rest = split_system(messages)
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": max_tokens or self._config.max_tokens,
            "temperature": min(temperature, 1.0),
            "messages": _convert_messages(rest),
        }
        if system:
            kwargs["system"] = system
        if request_id:
            kwargs["extra_headers"] = {"X-Request-Id": request_id}
        return kwargs

    def _translate(self, exc: Exception) -> ProviderError:
        if isinstance(exc, anthropic_sdk.RateLimitError):
            return RateLimited(
                self._config.name,
                str(exc.body or exc.message),
                reset_hint(exc.body, exc.response.headers, time.time()),
            )
        if isinstance(exc, anthropic_sdk.APIStatusError):
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
        if reasoning:
            logger.debug("Anthropic %s: reasoning config ignored", self._config.name)
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    **self._request_kwargs(messages, temperature, max_tokens, request_id)
                ),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise self._translate(exc) from exc

        latency = time.monotonic() - start
        text_blocks = [b.text for b in response.content if b.type == "text"]

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens
        logger.info("Anthropic %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return "\n".join(text_blocks).strip()

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
                self._client.messages.create(
                    stream=True,
                    **self._request_kwargs(messages, temperature, max_tokens, request_id),
                ),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise self._translate(exc) from exc
        return self._iterate(stream)

    async def _iterate(self, stream: Any) -> AsyncIterator[Token]:
        try:
            async for event in stream:
                if event.type != "content_block_delta":
                    continue
                if event.delta.type == "text_delta":
                    yield Token("content", event.delta.text)
                elif event.delta.type == "thinking_delta":
                    yield Token("reasoning", event.delta.thinking)
        except anthropic_sdk.APIError as exc:
            raise self._translate(exc) from exc
        finally:
            await stream.close()
