"""Convergent thinking: judge kickoff, A/B debate rounds scored by the judge, executor."""

import json
import logging
import re
from dataclasses import dataclass

from config.config_loader import PromptsConfig
from deliberation.emitter import StreamingEmitter
from deliberation.events import Event
from deliberation.models import (
    ConvergenceResult,
    ConvergenceState,
    ConvergenceStatus,
    JudgeVerdict,
    ParseFailure,
    Speaker,
    Transcript,
    Turn,
)
from deliberation.providers.base import NO_REASONING, UpstreamClient
from deliberation.retry import RetryController
from deliberation.turns import complete_turn, messages_for

logger = logging.getLogger(__name__)

CONVERGED_SCORE = 80
EXECUTED_SCORE_FLOOR = 82
KICKOFF_SCORE = 8
CONTEXT_TAIL = 10

FALLBACK_SYNTHESIS = "The agents are still refining toward a practical consensus."
FALLBACK_QUESTIONS = (
    "What outcome matters most: speed, quality, or cost?",
    "What constraints are non-negotiable?",
)
FALLBACK_UNRESOLVED = "The agents disagree on tradeoffs and prioritization details."
SOCIAL_FALLBACK_REPLY = "Hey - how can I help?"

_SOCIAL = re.compile(
    r"^(hi|hello|hey|yo|sup|what'?s up|thanks|thank you|ok|okay|cool|nice"
    r"|good (morning|afternoon|evening)|how are you)[!,.?\s]*$"
)
_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_BRACED = re.compile(r"\{[\s\S]*\}")
_TOKEN = re.compile(r"[a-z0-9]{4,}")


@dataclass(frozen=True)
class StepParams:
    temperature: float
    max_tokens: int


KICKOFF = StepParams(0.3, 350)
DEBATER_A = StepParams(0.55, 700)
DEBATER_B = StepParams(0.6, 700)
JUDGE = StepParams(0.2, 900)
EXECUTOR = StepParams(0.35, 1100)
SOCIAL = StepParams(0.3, 120)


def is_short_social_message(text: str) -> bool:
    normalized = text.strip().lower()
    if not normalized:
        return True
    if len(normalized) > 60:
        return False
    return bool(_SOCIAL.match(normalized))


def _strings(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_judge_output(raw: str) -> JudgeVerdict | ParseFailure:
    """Read the judge's JSON from a fenced block or the first {...} span."""
    fenced = _FENCED_JSON.search(raw)
    if fenced:
        candidate = fenced.group(1)
    else:
        braced = _BRACED.search(raw)
        candidate = braced.group(0) if braced else ""
    if not candidate.strip():
        return ParseFailure("no JSON object in judge output")

    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        return ParseFailure(f"invalid JSON: {exc.msg}")
    if not isinstance(parsed, dict):
        return ParseFailure("judge JSON is not an object")

    raw_score = parsed.get("convergence_score")
    if isinstance(raw_score, (int, float)) and not isinstance(raw_score, bool):
        score = max(0, min(100, round(raw_score)))
    else:
        score = 0

    return JudgeVerdict(
        score=score,
        converged=parsed.get("converged") is True,
        synthesis=_text(parsed.get("synthesis")),
        next_direction=_text(parsed.get("direction_for_next_round")),
        unresolved=_strings(parsed.get("unresolved_points")),
        clarifying_questions=_strings(parsed.get("clarifying_questions")),
        final_direction=_text(parsed.get("final_direction")),
    )


def _token_set(text: str) -> set[str]:
    return set(_TOKEN.findall(text.lower())[:200])


def estimate_agreement_score(a: str, b: str) -> int:
    """Lexical overlap of the two positions, scaled into [20, 85]."""
    tokens_a = _token_set(a)
    tokens_b = _token_set(b)
    if not tokens_a or not tokens_b:
        return 35
    ratio = len(tokens_a & tokens_b) / max(len(tokens_a), len(tokens_b))
    return max(20, min(85, round(ratio * 100)))


def status_from_score(score: int, converged: bool, round: int, max_rounds: int) -> ConvergenceStatus:
    if converged or score >= CONVERGED_SCORE:
        return ConvergenceStatus.CONVERGED
    if round >= max_rounds:
        return ConvergenceStatus.NEEDS_INPUT
    return ConvergenceStatus.RUNNING


def needs_input_message(unresolved: list[str], questions: list[str]) -> str:
    unresolved_text = (
        "\n".join(f"{i}. {p}" for i, p in enumerate(unresolved, 1))
        if unresolved else FALLBACK_UNRESOLVED
    )
    return "\n".join([
        "The agents have not fully converged yet.",
        "",
        "Current unresolved points:",
        unresolved_text,
        "",
        "Please clarify the following so I can restart convergent thinking with your constraints:",
        *(f"{i}. {q}" for i, q in enumerate(questions, 1)),
    ])


def _context_tail(task: str, transcript: Transcript) -> str:
    lines = [f"User task: {task}"]
    for turn in transcript:
        if turn.round == 0:
            lines.append(f"Judge kickoff: {turn.text}")
        else:
            lines.append(f"Round {turn.round} {turn.speaker.label}: {turn.text}")
    return "\n\n".join(lines[-CONTEXT_TAIL:])


async def run_social_reply(
    task: str,
    *,
    client: UpstreamClient,
    retry: RetryController,
    emitter: StreamingEmitter,
    prompts: PromptsConfig,
) -> ConvergenceResult:
    """Fast path for greetings: one cheap call, no rounds."""
    state = ConvergenceState(round=0, max_rounds=0, score=100, status=ConvergenceStatus.CONVERGED)
    await emitter.emit(Event.convergent_start(state))
    reply = await complete_turn(
        client, retry, messages_for(prompts.chat_system, task),
        label="social",
        temperature=SOCIAL.temperature,
        max_tokens=SOCIAL.max_tokens,
        reasoning=NO_REASONING,
    )
    final = reply.strip() or SOCIAL_FALLBACK_REPLY
    await emitter.emit(Event.content(final, Speaker.ASSISTANT))
    await emitter.emit(Event.done(final))
    return ConvergenceResult(task, Transcript(limit=0), state, final_text=final, completed=True)


async def run_convergent(
    task: str,
    *,
    client: UpstreamClient,
    retry: RetryController,
    emitter: StreamingEmitter,
    prompts: PromptsConfig,
    max_rounds: int = 4,
) -> ConvergenceResult:
    """Run kickoff, up to max_rounds of A/B/judge, then execute or ask for input.

    A judge reply that cannot be parsed falls back to the lexical overlap
    score. Returns early (completed=False) once the cancel token is set.
    """
    state = ConvergenceState(round=0, max_rounds=max_rounds, score=KICKOFF_SCORE, status=ConvergenceStatus.RUNNING)
    transcript = Transcript(limit=3 * max_rounds + 2)
    result = ConvergenceResult(task, transcript, state)
    await emitter.emit(Event.convergent_start(state))

    async def step(speaker: Speaker, round_number: int, system: str, user: str, params: StepParams, label: str) -> str | None:
        if emitter.cancelled:
            return None
        await emitter.emit(Event.start(speaker, round_number))
        text = await complete_turn(
            client, retry, messages_for(system, user),
            label=label,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            reasoning=NO_REASONING,
        )
        logger.info("%s: done (%d chars)", label, len(text))
        return text

    kickoff = await step(
        Speaker.JUDGE, 0, prompts.kickoff, prompts.kickoff_user.format(task=task), KICKOFF, "kickoff",
    )
    if kickoff is None:
        return result
    transcript.append(Turn(Speaker.JUDGE, 0, kickoff))
    await emitter.emit(Event.content(kickoff, Speaker.JUDGE))

    direction = kickoff
    final_direction = ""
    latest_a = latest_b = ""
    converged = False
    unresolved: list[str] = []
    questions: list[str] = []

    for round_number in range(1, max_rounds + 1):
        context = _context_tail(task, transcript)

        latest_a = await step(
            Speaker.DEBATER_A, round_number, prompts.debater_a,
            prompts.debater_a_user.format(task=task, context=context, direction=direction, round=round_number),
            DEBATER_A, f"debater-a-r{round_number}",
        )
        if latest_a is None:
            return result
        transcript.append(Turn(Speaker.DEBATER_A, round_number, latest_a))
        await emitter.emit(Event.content(latest_a, Speaker.DEBATER_A))

        latest_b = await step(
            Speaker.DEBATER_B, round_number, prompts.debater_b,
            prompts.debater_b_user.format(
                task=task, context=context, round=round_number, debater_a=latest_a, direction=direction,
            ),
            DEBATER_B, f"debater-b-r{round_number}",
        )
        if latest_b is None:
            return result
        transcript.append(Turn(Speaker.DEBATER_B, round_number, latest_b))
        await emitter.emit(Event.content(latest_b, Speaker.DEBATER_B))

        judge_raw = await step(
            Speaker.JUDGE, round_number, prompts.judge,
            prompts.judge_user.format(
                task=task, debater_a=latest_a, debater_b=latest_b, round=round_number, max_rounds=max_rounds,
            ),
            JUDGE, f"judge-r{round_number}",
        )
        if judge_raw is None:
            return result

        verdict = parse_judge_output(judge_raw)
        if isinstance(verdict, JudgeVerdict):
            synthesis = verdict.synthesis or FALLBACK_SYNTHESIS
            direction = verdict.next_direction or synthesis
            judge_text = f"{synthesis}\n\nDirection: {verdict.next_direction or 'Continue refining tradeoffs.'}"
            score = verdict.score
            converged = verdict.converged or score >= CONVERGED_SCORE
            final_direction = verdict.final_direction or direction
            unresolved = verdict.unresolved
            questions = verdict.clarifying_questions
        else:
            logger.warning("judge-r%d: %s, using lexical overlap", round_number, verdict.reason)
            synthesis = judge_text = FALLBACK_SYNTHESIS
            direction = synthesis
            score = estimate_agreement_score(latest_a, latest_b)
            converged = score >= CONVERGED_SCORE
            final_direction = direction
            unresolved = []
            questions = []

        transcript.append(Turn(Speaker.JUDGE, round_number, judge_text))
        await emitter.emit(Event.content(judge_text, Speaker.JUDGE))

        state.round = round_number
        state.score = score
        state.status = status_from_score(score, converged, round_number, max_rounds)
        logger.info("Round %d: score %d, %s", round_number, score, state.status.value)
        await emitter.emit(Event.convergence_state(state))

        if converged:
            break

    if converged:
        final = await step(
            Speaker.EXECUTOR, state.round, prompts.executor,
            prompts.executor_user.format(
                task=task, direction=final_direction, debater_a=latest_a, debater_b=latest_b,
            ),
            EXECUTOR, "executor",
        )
        if final is None:
            return result
        transcript.append(Turn(Speaker.EXECUTOR, state.round, final))
        state.score = max(state.score, EXECUTED_SCORE_FLOOR)
        state.status = ConvergenceStatus.CONVERGED
        await emitter.emit(Event.convergence_state(state))
    else:
        questions = questions or list(FALLBACK_QUESTIONS)
        result.clarifying_questions = questions
        final = needs_input_message(unresolved, questions)
        state.status = ConvergenceStatus.NEEDS_INPUT
        await emitter.emit(Event.clarifying_questions(questions))
        await emitter.emit(Event.convergence_state(state))

    result.final_text = final
    result.completed = True
    await emitter.emit(Event.content(final, Speaker.EXECUTOR if converged else Speaker.JUDGE))
    await emitter.emit(Event.done(final))
    return result
