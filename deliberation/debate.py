"""Debate mode: moderator intro, alternating Blue/Red turns, moderator verdict."""

import asyncio
import logging
import random
import re

from config.config_loader import PromptsConfig
from deliberation.emitter import StreamingEmitter
from deliberation.events import Event
from deliberation.models import DebateResult, SearchResult, Speaker, Transcript, Turn
from deliberation.providers.base import ChatMessage, UpstreamClient
from deliberation.retry import RetryController
from deliberation.sanitizer import Sanitizer
from deliberation.search import WebLookup
from deliberation.turns import messages_for, stream_turn

logger = logging.getLogger(__name__)

DEBATE_TEMPERATURE = 0.7
DEBATE_MAX_TOKENS = 600

_SIDES = {Speaker.BLUE: "FOR", Speaker.RED: "AGAINST"}

_WIN_VERBS = r"(?:wins|won|takes (?:it|the (?:debate|round|win))|prevails|carries (?:it|the debate))"


def _winner_patterns(name: str) -> tuple[re.Pattern[str], ...]:
    return (
        re.compile(rf"\b{name}\b(?:\s+\w+){{0,3}}?\s+{_WIN_VERBS}", re.IGNORECASE),
        re.compile(
            rf"(?:winner(?:\s+\w+){{0,2}}?\s+(?:is|goes to)|victory goes to|win goes to)\s+{name}\b",
            re.IGNORECASE,
        ),
    )


_WINNER_PATTERNS = {speaker: _winner_patterns(speaker.label) for speaker in _SIDES}


def clamp_rounds(rounds: int, low: int = 1, high: int = 5) -> int:
    return min(max(low, rounds), high)


def detect_winner(verdict: str) -> Speaker | None:
    """Best-effort winner from the verdict text. None when zero or both sides match."""
    matched = [
        speaker for speaker, patterns in _WINNER_PATTERNS.items()
        if any(p.search(verdict) for p in patterns)
    ]
    return matched[0] if len(matched) == 1 else None


def turn_order(first: Speaker, rounds: int) -> list[Speaker]:
    second = Speaker.RED if first is Speaker.BLUE else Speaker.BLUE
    return [first, second] * rounds


def format_transcript(transcript: Transcript) -> str:
    return "\n\n".join(f"[{t.speaker.label.upper()}]: {t.text}" for t in transcript)


async def research(topic: str, lookup: WebLookup) -> tuple[list[SearchResult], list[SearchResult]]:
    """Supporting and opposing lookups, run in parallel."""
    blue, red = await asyncio.gather(
        lookup.search(f"{topic} arguments for benefits evidence"),
        lookup.search(f"{topic} arguments against problems criticism"),
    )
    return blue, red


async def run_debate(
    topic: str,
    *,
    client: UpstreamClient,
    retry: RetryController,
    emitter: StreamingEmitter,
    prompts: PromptsConfig,
    sanitizer: Sanitizer,
    rounds: int,
    lookup: WebLookup | None = None,
    rng: random.Random | None = None,
) -> DebateResult:
    """Run one debate and return its transcript.

    Each debater sees only the opponent's latest utterance (or the moderator
    intro on the very first turn). Cancellation stops before the next
    upstream call and skips the verdict.
    """
    rng = rng or random.Random()
    transcript = Transcript(limit=2 * rounds + 2)

    sources: dict[Speaker, frozenset[str]] = {Speaker.BLUE: frozenset(), Speaker.RED: frozenset()}
    if lookup is not None:
        await emitter.emit(Event.web_search_start())
        blue_results, red_results = await research(topic, lookup)
        sources[Speaker.BLUE] = frozenset(r.url for r in blue_results)
        sources[Speaker.RED] = frozenset(r.url for r in red_results)
        await emitter.emit(Event.web_search_done([r.url for r in blue_results], Speaker.BLUE))
        await emitter.emit(Event.web_search_done([r.url for r in red_results], Speaker.RED))

    blue_first = rng.random() < 0.5
    coin = "Heads" if blue_first else "Tails"
    first = Speaker.BLUE if blue_first else Speaker.RED
    logger.info("Coin toss: %s, %s speaks first", coin, first.label)
    result = DebateResult(topic=topic, transcript=transcript, first_speaker=first)

    async def speak(
        speaker: Speaker,
        round_number: int,
        messages: list[ChatMessage],
        label: str,
        is_verdict: bool = False,
    ) -> str | None:
        if emitter.cancelled:
            return None
        logger.info("%s: start", label)
        await emitter.emit(Event.start(speaker, round_number, is_verdict))
        acc = await stream_turn(
            client, retry, emitter, messages,
            label=label,
            speaker=speaker,
            temperature=DEBATE_TEMPERATURE,
            max_tokens=DEBATE_MAX_TOKENS,
            emit_content=False,
        )
        if emitter.cancelled:
            return None
        if speaker is Speaker.MODERATOR:
            cleaned = sanitizer.moderator(acc.text)
        else:
            cleaned = sanitizer.debater(acc.text, speaker.label)
        logger.info("%s: done (%d chars)", label, len(cleaned))
        await emitter.emit(Event.content(cleaned, speaker))
        transcript.append(Turn(speaker, round_number, cleaned, sources.get(speaker, frozenset())))
        return cleaned

    intro = await speak(
        Speaker.MODERATOR,
        0,
        messages_for(
            prompts.moderator_intro,
            prompts.moderator_intro_user.format(topic=topic, coin=coin, first=first.label),
        ),
        "moderator-intro",
    )
    if intro is None:
        return result

    for index, speaker in enumerate(turn_order(first, rounds)):
        round_number = index // 2 + 1
        opponent = Speaker.RED if speaker is Speaker.BLUE else Speaker.BLUE
        if index == 0:
            user = prompts.debater_opening.format(topic=topic, intro=intro)
        else:
            user = prompts.debater_reply.format(
                topic=topic, opponent=opponent.label, opponent_text=transcript.last(opponent).text,
            )
        system = prompts.debater.format(name=speaker.label, side=_SIDES[speaker])
        spoken = await speak(
            speaker, round_number, messages_for(system, user), f"{speaker.value}-r{round_number}",
        )
        if spoken is None:
            return result

    verdict = await speak(
        Speaker.MODERATOR,
        rounds + 1,
        messages_for(
            prompts.moderator_verdict,
            prompts.moderator_verdict_user.format(topic=topic, transcript=format_transcript(transcript)),
        ),
        "verdict",
        is_verdict=True,
    )
    if verdict is None:
        return result

    result.winner = detect_winner(verdict)
    if result.winner is None:
        logger.warning("Verdict did not name a single winner")
    else:
        logger.info("Verdict: %s wins", result.winner.label)

    result.completed = True
    await emitter.emit(Event.complete())
    return result
