"""Request entry point: safety gate, ingestion, web context, then the mode's controller."""

import asyncio
import logging
import random
from dataclasses import dataclass, field

from config.config_loader import AppConfig
from deliberation.chat import run_plain
from deliberation.convergence import is_short_social_message, run_convergent, run_social_reply
from deliberation.debate import clamp_rounds, run_debate
from deliberation.emitter import StreamingEmitter
from deliberation.events import Event
from deliberation.ingestion import prepare_task
from deliberation.models import ConvergenceResult, DebateResult, Mode, OrchestrationRequest
from deliberation.providers.base import ProviderError, RetryExhausted, UpstreamClient
from deliberation.retry import RetryController
from deliberation.safety import SafetyBlocked, SafetyGate, validate_topic
from deliberation.sanitizer import Sanitizer
from deliberation.search import WebLookup, format_context

logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    Mode.DEBATE: "The debate ran into an error. Please try again.",
    Mode.CONVERGENT: "Convergent Thinking Mode ran into an error. Please try again.",
    Mode.PLAIN: "The assistant ran into an error. Please try again.",
}
RATE_LIMITED_MESSAGE = "The model is rate limited right now. Please wait a minute and try again."
TIMEOUT_MESSAGE = "The request took too long and was stopped."
BLOCKED_MESSAGE = "This topic is blocked in Debate Mode. Please choose a neutral, academic, or entertainment topic."

Outcome = DebateResult | ConvergenceResult | str | None


@dataclass
class Collaborators:
    """Everything an orchestration request talks to outside the process."""

    chat: UpstreamClient
    vision: UpstreamClient | None = None
    gate: SafetyGate | None = None
    lookup: WebLookup | None = None
    retry: RetryController = field(default_factory=RetryController)
    rng: random.Random | None = None


async def _check_topic(topic: str, gate: SafetyGate | None) -> None:
    if gate is not None:
        await gate.check(topic)
        return
    local = validate_topic(topic)
    if not local.allow:
        raise SafetyBlocked(local.category, local.reason)
    logger.warning("No topic guard configured, only the local screen was applied")


async def _with_web_context(task: str, lookup: WebLookup, emitter: StreamingEmitter) -> str:
    await emitter.emit(Event.web_search_start())
    results = await lookup.search(task)
    await emitter.emit(Event.web_search_done([r.url for r in results]))
    if not results:
        return task
    return f"{task}\n\nWeb context:\n{format_context(results)}"


async def _dispatch(
    request: OrchestrationRequest,
    collab: Collaborators,
    config: AppConfig,
    emitter: StreamingEmitter,
) -> Outcome:
    defaults = config.defaults
    task = request.task.strip()

    if request.mode is Mode.CONVERGENT and not request.attachments and is_short_social_message(task):
        return await run_social_reply(
            task, client=collab.chat, retry=collab.retry, emitter=emitter, prompts=config.prompts,
        )

    if request.mode is Mode.DEBATE:
        await emitter.emit(Event.status("Checking topic..."))
        await _check_topic(task, collab.gate)

    if request.attachments:
        task = await prepare_task(
            task,
            request.attachments,
            chat=collab.chat,
            vision=collab.vision,
            retry=collab.retry,
            prompts=config.prompts,
            config=config.ingestion,
            max_bytes=defaults.max_attachment_bytes,
            emitter=emitter,
        )
        if emitter.cancelled:
            return None

    if request.mode is Mode.DEBATE:
        rounds = clamp_rounds(request.max_rounds or defaults.rounds, defaults.min_rounds, defaults.max_rounds)
        research = collab.lookup if request.web_search_enabled is not False else None
        return await run_debate(
            task,
            client=collab.chat,
            retry=collab.retry,
            emitter=emitter,
            prompts=config.prompts,
            sanitizer=Sanitizer(config.sanitizer),
            rounds=rounds,
            lookup=research,
            rng=collab.rng,
        )

    if request.web_search_enabled and collab.lookup is not None:
        task = await _with_web_context(task, collab.lookup, emitter)

    if request.mode is Mode.CONVERGENT:
        return await run_convergent(
            task,
            client=collab.chat,
            retry=collab.retry,
            emitter=emitter,
            prompts=config.prompts,
            max_rounds=clamp_rounds(
                request.max_rounds or defaults.convergent_max_rounds, 1, defaults.convergent_max_rounds,
            ),
        )

    return await run_plain(
        task,
        client=collab.chat,
        retry=collab.retry,
        emitter=emitter,
        prompts=config.prompts,
        allow_instant=not request.attachments,
    )


async def orchestrate(
    request: OrchestrationRequest,
    collab: Collaborators,
    config: AppConfig,
    emitter: StreamingEmitter,
) -> Outcome:
    """Drive one request to completion, always ending the event stream.

    Terminal failures become a single error event with a fixed message. The
    request deadline cancels the token so no further upstream calls start.
    """
    logger.info("Request: mode=%s, %d attachments", request.mode.value, len(request.attachments))
    try:
        async with asyncio.timeout(config.defaults.request_timeout_sec):
            return await _dispatch(request, collab, config, emitter)
    except TimeoutError:
        emitter.token.cancel("deadline exceeded")
        logger.warning("Request exceeded %.0fs deadline", config.defaults.request_timeout_sec)
        await emitter.emit(Event.error(TIMEOUT_MESSAGE, "timeout"))
    except SafetyBlocked as exc:
        logger.info("Topic blocked: %s", exc)
        await emitter.emit(Event.error(f"{BLOCKED_MESSAGE} {exc.reason}", exc.category))
    except RetryExhausted as exc:
        logger.error("Retry budget spent: %s", exc)
        await emitter.emit(Event.error(RATE_LIMITED_MESSAGE, "rate_limited"))
    except ProviderError as exc:
        logger.error("Upstream failure: %s", exc)
        await emitter.emit(Event.error(ERROR_MESSAGES[request.mode], "upstream_error"))
    except Exception:
        logger.exception("Unexpected failure in %s mode", request.mode.value)
        await emitter.emit(Event.error(ERROR_MESSAGES[request.mode], "internal_error"))
    finally:
        await emitter.finish()
    return None
