"""Abstract upstream client plus the error taxonomy shared by all adapters."""

import base64
import binascii
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, NamedTuple

ChatMessage = dict[str, Any]
ReasoningConfig = dict[str, Any]

NO_REASONING: ReasoningConfig = {"effort": "none", "exclude": True}


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class UpstreamError(ProviderError):
    """Non-2xx (or transport) failure that is not worth retrying."""

    def __init__(self, provider_name: str, status: int | None, body: str) -> None:
        self.status = status
        self.body = body
        label = f"HTTP {status}" if status is not None else "transport error"
        super().__init__(provider_name, f"{label}: {body[:300]}")


class RateLimited(UpstreamError):
    """429 response. reset_at is an optional epoch-seconds hint from the upstream."""

    def __init__(self, provider_name: str, body: str, reset_at: float | None = None) -> None:
        self.reset_at = reset_at
        super().__init__(provider_name, 429, body)


class RetryExhausted(ProviderError):
    """Raised after the retry budget is spent on consecutive rate limits."""

    def __init__(self, provider_name: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(provider_name, f"Still rate limited after {attempts} attempts")


class Token(NamedTuple):
    kind: str  # "reasoning" | "content"
    text: str


class UpstreamClient(ABC):
    """Abstract base for all text-generation upstreams."""

    @abstractmethod
    def name(self) -> str:
        """Return the role name this client serves (e.g. 'chat', 'vision')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def complete_once(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.4,
        max_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
        request_id: str | None = None,
    ) -> str:
        """Run one non-streaming chat completion and return its text.

        Raises:
            RateLimited: On a 429 response.
            UpstreamError: On any other failure.
        """
        ...

    @abstractmethod
    async def stream_tokens(
        self,
        messages: list[ChatMessage],
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        reasoning: ReasoningConfig | None = None,
        request_id: str | None = None,
    ) -> AsyncIterator[Token]:
        """Open a token stream.

        Awaiting this performs the request, so HTTP failures (including 429)
        surface here rather than mid-iteration.
        """
        ...


def reset_hint(body: Any, headers: Any, now: float) -> float | None:
    """Extract a rate-limit reset time (epoch seconds) from an error body or headers.

    OpenRouter nests the upstream headers in error.metadata.headers with an
    epoch-milliseconds X-RateLimit-Reset. Plain APIs send retry-after seconds.
    """
    error = body.get("error", body) if isinstance(body, dict) else None
    if isinstance(error, dict):
        meta_headers = (error.get("metadata") or {}).get("headers") or {}
        raw = meta_headers.get("X-RateLimit-Reset") if isinstance(meta_headers, dict) else None
        if raw is not None:
            try:
                return float(raw) / 1000.0
            except (TypeError, ValueError):
                pass
    retry_after = headers.get("retry-after") if headers is not None else None
    if retry_after is not None:
        try:
            return now + float(retry_after)
        except (TypeError, ValueError):
            return None
    return None


def split_system(messages: list[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Pull system messages out of an OpenAI-shaped message list."""
    system_parts = [str(m["content"]) for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return "\n\n".join(system_parts), rest


def decode_data_url(url: str) -> tuple[str, bytes]:
    """Return (mime_type, payload) for a base64 data URL."""
    if not url.startswith("data:") or ";base64," not in url:
        raise ValueError("Not a base64 data URL")
    header, encoded = url.split(",", 1)
    mime = header[len("data:"):].split(";", 1)[0] or "application/octet-stream"
    try:
        return mime, base64.b64decode(encoded, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc


def encode_data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"
