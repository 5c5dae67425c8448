"""One upstream turn: retry-wrapped call, token fold, cumulative events."""

import logging
from collections.abc import AsyncIterator

from deliberation.emitter import Accumulator, StreamingEmitter
from deliberation.events import Event
from deliberation.models import Speaker
from deliberation.providers.base import ChatMessage, ReasoningConfig, Token, UpstreamClient
from deliberation.retry import RetryController

logger = logging.getLogger(__name__)


def messages_for(system: str, user: str) -> list[ChatMessage]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


async def stream_turn(
    client: UpstreamClient,
    retry: RetryController,
    emitter: StreamingEmitter,
    messages: list[ChatMessage],
    *,
    label: str,
    speaker: Speaker | None = None,
    temperature: float = 0.7,
    max_tokens: int | None = None,
    reasoning: ReasoningConfig | None = None,
    emit_content: bool = True,
) -> Accumulator:
    """Stream one completion, emitting cumulative reasoning (and content) events.

    Stops reading as soon as the emitter's cancel token is set. Returns the
    folded accumulator; callers use .text for the raw utterance.
    """
    async def call(request_id: str) -> AsyncIterator[Token]:
        return await client.stream_tokens(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            reasoning=reasoning,
            request_id=request_id,
        )

    tokens = await retry.send(call, label)
    acc = Accumulator()
    try:
        async for token in tokens:
            if emitter.cancelled:
                logger.info("%s: cancelled mid-stream", label)
                break
            if not token.text:
                continue
            acc = acc.fold(token)
            if token.kind == "reasoning":
                await emitter.emit(Event.reasoning(acc.reasoning, speaker))
            elif emit_content:
                await emitter.emit(Event.content(acc.content, speaker))
    finally:
        aclose = getattr(tokens, "aclose", None)
        if aclose is not None:
            await aclose()

    logger.debug(
        "%s: %d reasoning chars, %d content chars",
        label, len(acc.reasoning), len(acc.content),
    )
    return acc


async def complete_turn(
    client: UpstreamClient,
    retry: RetryController,
    messages: list[ChatMessage],
    *,
    label: str,
    temperature: float = 0.4,
    max_tokens: int | None = None,
    reasoning: ReasoningConfig | None = None,
) -> str:
    """One non-streaming completion through the retry controller."""
    async def call(request_id: str) -> str:
        return await client.complete_once(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            reasoning=reasoning,
            request_id=request_id,
        )

    return await retry.send(call, label)
