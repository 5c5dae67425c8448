"""Bounded retry on upstream rate limits, honoring reset-time hints."""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import TypeVar

from config.config_loader import RetryConfig
from deliberation.providers.base import RateLimited, RetryExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryController:
    """Wraps upstream calls with retry on 429 only.

    Every other failure propagates on the first attempt. No state is kept
    between send() calls.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self._config.max_retries

    def backoff(self, attempt: int, reset_at: float | None = None) -> float:
        """Seconds to wait before retrying after failed attempt number `attempt` (0-based)."""
        if reset_at is not None:
            remaining = reset_at - self._clock()
            if 0 < remaining < self._config.max_reset_wait_sec:
                return remaining + self._config.reset_margin_sec
        return (attempt + 1) * self._config.base_delay_sec

    async def send(self, call: Callable[[str], Awaitable[T]], label: str) -> T:
        """Run call(request_id) until it succeeds or the rate-limit budget is spent.

        Raises:
            RetryExhausted: After max_retries + 1 consecutive rate limits.
            UpstreamError: Immediately, for any non-429 failure.
        """
        total = self._config.max_retries + 1
        correlation = uuid.uuid4().hex[:8]
        last: RateLimited | None = None

        for attempt in range(total):
            request_id = f"{label}-{correlation}-{attempt}"
            logger.info("%s: upstream attempt %d/%d [%s]", label, attempt + 1, total, request_id)
            try:
                return await call(request_id)
            except RateLimited as exc:
                last = exc
                if attempt + 1 >= total:
                    break
                wait = self.backoff(attempt, exc.reset_at)
                logger.warning(
                    "%s: rate limited (attempt %d/%d), waiting %.1fs",
                    label, attempt + 1, total, wait,
                )
                await self._sleep(wait)

        provider = last.provider_name if last is not None else label
        raise RetryExhausted(provider, total) from last
