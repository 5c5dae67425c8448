"""Upstream health checks: ping each configured role before a run."""

import asyncio
import logging

from deliberation.providers.base import NO_REASONING, UpstreamClient

logger = logging.getLogger(__name__)

_PING_MESSAGES = [{"role": "user", "content": "Reply with the word OK only."}]
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, client: UpstreamClient) -> tuple[str, bool, str]:
    """Ping a single upstream. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(
            client.complete_once(_PING_MESSAGES, temperature=0.0, max_tokens=8, reasoning=NO_REASONING),
            timeout=_TIMEOUT_SEC,
        )
        return name, True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc) or type(exc).__name__


async def run_health_checks(
    clients: dict[str, UpstreamClient],
) -> dict[str, tuple[bool, str]]:
    """Ping all upstreams in parallel.

    Returns:
        Dict mapping role name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, c) for n, c in clients.items()))
    return {name: (ok, err) for name, ok, err in results}
