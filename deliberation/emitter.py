"""Ordered event delivery to one consumer, with explicit cancellation."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace

from deliberation.events import Event
from deliberation.providers.base import Token

logger = logging.getLogger(__name__)

_END = object()


class CancelToken:
    """Checked flag that tells the round controllers to stop issuing upstream calls."""

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str) -> None:
        if self._reason is None:
            self._reason = reason
            logger.info("Request cancelled: %s", reason)


@dataclass(frozen=True)
class Accumulator:
    """Immutable fold over streamed tokens. fold() returns a new value."""

    reasoning: str = ""
    content: str = ""

    def fold(self, token: Token) -> "Accumulator":
        if token.kind == "reasoning":
            return replace(self, reasoning=self.reasoning + token.text)
        return replace(self, content=self.content + token.text)

    @property
    def text(self) -> str:
        """Content if the model produced any, else whatever arrived as reasoning."""
        return self.content if self.content.strip() else self.reasoning


class StreamingEmitter:
    """Bounded, ordered event channel between one producer and one consumer.

    emit() suspends while the buffer is full. close() is the consumer's
    disconnect: it cancels the token and drains the buffer so a blocked
    producer wakes up and sees the flag.
    """

    def __init__(self, maxsize: int = 64, token: CancelToken | None = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.token = token or CancelToken()
        self._closed = False
        self._finished = False
        self.emitted = 0

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: Event) -> bool:
        """Queue one event. Returns False if the consumer is gone."""
        if self._closed or self._finished:
            return False
        await self._queue.put(event)
        self.emitted += 1
        return True

    async def finish(self) -> None:
        """Signal end of stream to the consumer."""
        if self._finished:
            return
        self._finished = True
        if not self._closed:
            await self._queue.put(_END)

    def close(self, reason: str = "consumer disconnected") -> None:
        self._closed = True
        self.token.cancel(reason)
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._events()

    async def _events(self) -> AsyncIterator[Event]:
        while not self._closed:
            item = await self._queue.get()
            if item is _END:
                return
            yield item
