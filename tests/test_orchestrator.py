"""Tests for deliberation/orchestrator.py."""

import asyncio
import io

import httpx
from PIL import Image

from deliberation.events import EventType
from deliberation.models import (
    Attachment,
    AttachmentKind,
    ConvergenceResult,
    DebateResult,
    Mode,
    OrchestrationRequest,
    SearchResult,
)
from deliberation.orchestrator import (
    ERROR_MESSAGES,
    RATE_LIMITED_MESSAGE,
    TIMEOUT_MESSAGE,
    Collaborators,
    orchestrate,
)
from deliberation.providers.base import RateLimited, UpstreamError
from deliberation.safety import SafetyGate
from deliberation.search import WikipediaLookup
from tests.conftest import FixedCoin, ScriptedClient, StubLookup, collect


class StalledClient(ScriptedClient):
    """Never answers within any reasonable deadline."""

    async def complete_once(self, messages, **kwargs) -> str:
        self._record(messages, False, None, None, None, None)
        await asyncio.sleep(30)
        return "too late"


async def _run(request, collab, config, emitter):
    # orchestrate() always finishes the emitter, so collect() terminates
    outcome = await orchestrate(request, collab, config, emitter)
    return outcome, await collect(emitter)


async def test_plain_request_streams_and_finishes(app_config, retry, emitter):
    collab = Collaborators(chat=ScriptedClient(["Tides follow the moon."]), retry=retry)
    outcome, events = await _run(
        OrchestrationRequest("Explain tides", Mode.PLAIN), collab, app_config, emitter,
    )
    assert outcome == "Tides follow the moon."
    assert events[-1].type is EventType.DONE


async def test_convergent_greeting_takes_fast_path(app_config, retry, emitter):
    chat = ScriptedClient(["Hi! What should we think through?"])
    outcome, events = await _run(
        OrchestrationRequest("hi", Mode.CONVERGENT), Collaborators(chat=chat, retry=retry), app_config, emitter,
    )
    assert isinstance(outcome, ConvergenceResult)
    assert outcome.state.score == 100
    assert len(chat.calls) == 1
    assert events[0].type is EventType.CONVERGENT_START


async def test_debate_blocked_locally(app_config, retry, emitter):
    chat = ScriptedClient()
    outcome, events = await _run(
        OrchestrationRequest("Who should win the next election", Mode.DEBATE),
        Collaborators(chat=chat, retry=retry), app_config, emitter,
    )
    assert outcome is None
    assert chat.calls == []
    assert events[-1].type is EventType.ERROR
    assert events[-1].data["code"] == "political_or_geopolitical"
    assert "blocked in Debate Mode" in events[-1].data["message"]


async def test_debate_blocked_by_guard_model(app_config, retry, emitter, prompts):
    guard = ScriptedClient(['{"allow": false, "category": "high_risk_advice", "reason": "Risky advice."}'])
    chat = ScriptedClient()
    outcome, events = await _run(
        OrchestrationRequest("Skipping sleep boosts productivity", Mode.DEBATE),
        Collaborators(chat=chat, gate=SafetyGate(guard, prompts), retry=retry), app_config, emitter,
    )
    assert outcome is None
    assert chat.calls == []
    assert events[-1].data["code"] == "high_risk_advice"
    assert events[-1].data["message"].endswith("Risky advice.")


async def test_debate_runs_with_research_by_default(app_config, retry, emitter):
    lookup = StubLookup()
    chat = ScriptedClient(fallback=lambda messages: "Moderator: A calm and reasonable statement about pizza toppings.")
    outcome, events = await _run(
        OrchestrationRequest("Pineapple belongs on pizza", Mode.DEBATE, max_rounds=1),
        Collaborators(chat=chat, lookup=lookup, retry=retry, rng=FixedCoin(0.2)), app_config, emitter,
    )
    assert isinstance(outcome, DebateResult)
    assert len(outcome.transcript) == 4
    assert len(lookup.queries) == 2
    assert events[0].type is EventType.STATUS
    assert EventType.WEB_SEARCH_START in {e.type for e in events}


async def test_debate_research_can_be_disabled(app_config, retry, emitter):
    lookup = StubLookup()
    chat = ScriptedClient(fallback=lambda messages: "Moderator: A calm and reasonable statement about pizza toppings.")
    await _run(
        OrchestrationRequest("Pineapple belongs on pizza", Mode.DEBATE, max_rounds=1, web_search_enabled=False),
        Collaborators(chat=chat, lookup=lookup, retry=retry, rng=FixedCoin(0.2)), app_config, emitter,
    )
    assert lookup.queries == []


async def test_web_context_is_spliced_for_plain_mode(app_config, retry, emitter):
    class OneResult:
        async def search(self, query, limit=3):
            return [SearchResult("Tide", "https://en.wikipedia.org/wiki/Tide", "Rise and fall of sea levels")]

    chat = ScriptedClient(["Answer."])
    _, events = await _run(
        OrchestrationRequest("Explain tides", Mode.PLAIN, web_search_enabled=True),
        Collaborators(chat=chat, lookup=OneResult(), retry=retry), app_config, emitter,
    )
    prompt = chat.user_prompts()[0]
    assert prompt.startswith("Explain tides\n\nWeb context:\n[1] Tide:")
    done = [e for e in events if e.type is EventType.WEB_SEARCH_DONE]
    assert done[0].data["sources"] == ["https://en.wikipedia.org/wiki/Tide"]


async def test_image_attachment_reaches_the_prompt(app_config, retry, emitter):
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color="blue").save(buffer, format="PNG")
    chat = ScriptedClient(["It is a blue square."])
    vision = ScriptedClient(["A small blue square."], provider_name="vision")

    outcome, _ = await _run(
        OrchestrationRequest("hi", Mode.PLAIN, [Attachment(AttachmentKind.IMAGE, buffer.getvalue(), "sq.png")]),
        Collaborators(chat=chat, vision=vision, retry=retry), app_config, emitter,
    )
    assert outcome == "It is a blue square."
    assert "[Attached image: sq.png]\nA small blue square." in chat.user_prompts()[0]


async def test_rate_limit_exhaustion_maps_to_error_code(app_config, retry, emitter):
    chat = ScriptedClient(fallback=lambda messages: RateLimited("chat", "slow down"))
    outcome, events = await _run(
        OrchestrationRequest("Explain tides", Mode.PLAIN), Collaborators(chat=chat, retry=retry), app_config, emitter,
    )
    assert outcome is None
    assert len(chat.calls) == retry.max_retries + 1
    assert events[-1].data == {"message": RATE_LIMITED_MESSAGE, "code": "rate_limited"}


async def test_upstream_error_uses_mode_message(app_config, retry, emitter):
    chat = ScriptedClient([UpstreamError("chat", 500, "boom")])
    _, events = await _run(
        OrchestrationRequest("Plan a product launch", Mode.CONVERGENT),
        Collaborators(chat=chat, retry=retry), app_config, emitter,
    )
    errors = [e for e in events if e.type is EventType.ERROR]
    assert len(errors) == 1
    assert errors[0].data == {"message": ERROR_MESSAGES[Mode.CONVERGENT], "code": "upstream_error"}


async def test_deadline_cancels_and_reports_timeout(app_config, retry, emitter):
    app_config.defaults.request_timeout_sec = 0.05
    outcome, events = await _run(
        OrchestrationRequest("Plan a product launch", Mode.CONVERGENT),
        Collaborators(chat=StalledClient(), retry=retry), app_config, emitter,
    )
    assert outcome is None
    assert emitter.cancelled
    assert events[-1].data == {"message": TIMEOUT_MESSAGE, "code": "timeout"}


async def test_malformed_lookup_body_leaves_task_unchanged(app_config, retry, emitter):
    lookup = WikipediaLookup(client=httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=[])),
    ))
    chat = ScriptedClient(["Answer."])
    outcome, events = await _run(
        OrchestrationRequest("Explain tides", Mode.PLAIN, web_search_enabled=True),
        Collaborators(chat=chat, lookup=lookup, retry=retry), app_config, emitter,
    )
    assert outcome == "Answer."
    assert chat.user_prompts()[0] == "Explain tides"
    assert events[-1].type is EventType.DONE


async def test_unexpected_failure_still_emits_error_event(app_config, retry, emitter):
    class BrokenLookup:
        async def search(self, query, limit=3):
            raise AttributeError("'list' object has no attribute 'get'")

    chat = ScriptedClient()
    outcome, events = await _run(
        OrchestrationRequest("Explain tides", Mode.PLAIN, web_search_enabled=True),
        Collaborators(chat=chat, lookup=BrokenLookup(), retry=retry), app_config, emitter,
    )
    assert outcome is None
    assert chat.calls == []
    assert events[-1].data == {"message": ERROR_MESSAGES[Mode.PLAIN], "code": "internal_error"}


async def test_convergent_rounds_are_capped(app_config, retry, emitter):
    counter = iter(range(1000))

    def distinct(messages):
        n = next(counter)
        return f"alpha{n}word bravo{n}word charlie{n}word"

    chat = ScriptedClient(fallback=distinct)
    cap = app_config.defaults.convergent_max_rounds
    outcome, events = await _run(
        OrchestrationRequest("Plan a product launch", Mode.CONVERGENT, max_rounds=1000),
        Collaborators(chat=chat, retry=retry), app_config, emitter,
    )
    assert isinstance(outcome, ConvergenceResult)
    assert outcome.state.max_rounds == cap
    assert len(chat.calls) == 1 + 3 * cap
