"""Gemini upstream using the google-genai SDK with native async."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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
    split_system,
)

logger = logging.getLogger(__name__)


def _to_parts(content: Any) -> list[genai_types.Part]:
    if isinstance(content, str):
        return [genai_types.Part.from_text(text=content)]
    parts = []
    for part in content:
        if part.get("type") == "image_url":
            mime, data = decode_data_url(part["image_url"]["url"])
            parts.append(genai_types.Part.from_bytes(data=data, mime_type=mime))
        else:
            parts.append(genai_types.Part.from_text(text=str(part.get("text", ""))))
    return parts


def _to_contents(messages: list[ChatMessage]) -> list[genai_types.Content]:
    return [
        genai_types.Content(
            role="model" if m["role"] == "assistant" else "user",
            parts=_to_parts(m["content"]),
        )
        for m in messages
    ]


class GeminiProvider(UpstreamClient):
    """Google Gemini upstream via the google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _request_kwargs(
        self,
        messages: list[ChatMessage],
        temperature: float,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        system, rest = split_system(messages)
        return {
            "model": self._config.model,
            "contents": _to_contents(rest),
            "config": genai_types.GenerateContentConfig(
                system_instruction=system or None,
                temperature=temperature,
                max_output_tokens=max_tokens or self._config.max_tokens,
            ),
        }

    def _translate(self, exc: Exception) -> ProviderError:
        if isinstance(exc, genai_errors.APIError):
            if exc.code == 429:
                return RateLimited(self._config.name, str(exc.message))
            return UpstreamError(self._config.name, exc.code, str(exc.message))
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
                self._client.aio.models.generate_content(
                    **self._request_kwargs(messages, temperature, max_tokens)
                ),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise self._translate(exc) from exc

        latency = time.monotonic() - start
        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count
        logger.info("Gemini %s: %.2fs, %s tokens", self._config.name, latency, token_count)

        return (response.text or "").strip()

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
                self._client.aio.models.generate_content_stream(
                    **self._request_kwargs(messages, temperature, max_tokens)
                ),
                timeout=self._config.timeout_sec,
            )
        except Exception as exc:
            raise self._translate(exc) from exc
        return self._iterate(stream)

    async def _iterate(self, stream: Any) -> AsyncIterator[Token]:
        try:
            async for chunk in stream:
                if chunk.text:
                    yield Token("content", chunk.text)
        except genai_errors.APIError as exc:
            raise self._translate(exc) from exc
