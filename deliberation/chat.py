"""Plain mode: one streamed assistant reply, or an instant canned one for greetings."""

import asyncio
import logging

from config.config_loader import PromptsConfig
from deliberation.convergence import is_short_social_message
from deliberation.emitter import StreamingEmitter
from deliberation.events import Event
from deliberation.models import Speaker
from deliberation.providers.base import UpstreamClient
from deliberation.retry import RetryController
from deliberation.turns import messages_for, stream_turn

logger = logging.getLogger(__name__)

CHAT_TEMPERATURE = 0.45
WORD_DELAY_SEC = 0.038


def instant_reply(text: str) -> str:
    if "how are you" in text.strip().lower():
        return "I am doing well. What can I help you with?"
    return "Hey! How can I help you today?"


async def stream_words(emitter: StreamingEmitter, reply: str, delay: float = WORD_DELAY_SEC) -> None:
    partial = ""
    for word in reply.split(" "):
        if emitter.cancelled:
            return
        partial = f"{partial} {word}" if partial else word
        await emitter.emit(Event.content(partial, Speaker.ASSISTANT))
        if delay:
            await asyncio.sleep(delay)


async def run_plain(
    task: str,
    *,
    client: UpstreamClient,
    retry: RetryController,
    emitter: StreamingEmitter,
    prompts: PromptsConfig,
    allow_instant: bool = True,
    word_delay: float = WORD_DELAY_SEC,
) -> str | None:
    """Returns the final text, or None if cancelled before it was delivered."""
    if allow_instant and is_short_social_message(task):
        reply = instant_reply(task)
        logger.info("Instant reply for short social message")
        await stream_words(emitter, reply, word_delay)
        if emitter.cancelled:
            return None
        await emitter.emit(Event.done(reply))
        return reply

    acc = await stream_turn(
        client, retry, emitter, messages_for(prompts.chat_system, task),
        label="chat",
        speaker=Speaker.ASSISTANT,
        temperature=CHAT_TEMPERATURE,
    )
    if emitter.cancelled:
        return None
    final = acc.content.strip() or acc.reasoning.strip()
    await emitter.emit(Event.done(final))
    return final
