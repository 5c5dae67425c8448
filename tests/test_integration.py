"""Integration tests: real API calls, no mocks. Requires .env with OPENROUTER_API_KEY."""

import asyncio
import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

load_dotenv()

pytestmark = pytest.mark.integration

if not os.environ.get("OPENROUTER_API_KEY", "").strip():
    pytestmark = pytest.mark.skip(reason="OPENROUTER_API_KEY not set")


async def _drive(request, collab, config):
    """Run orchestrate() while draining its events, as the CLI does."""
    from deliberation.emitter import StreamingEmitter
    from deliberation.orchestrator import orchestrate

    emitter = StreamingEmitter(maxsize=config.defaults.event_buffer)
    producer = asyncio.create_task(orchestrate(request, collab, config, emitter))
    events = [event async for event in emitter]
    return await producer, events


async def test_one_round_debate_end_to_end(tmp_path: Path):
    """Run a real 1-round debate through the orchestrator, verify no crash."""
    from config.config_loader import load_config
    from deliberation.cli import _build_clients
    from deliberation.events import EventType
    from deliberation.models import DebateResult, Mode, OrchestrationRequest
    from deliberation.orchestrator import Collaborators
    from deliberation.output import save_to_file
    from deliberation.retry import RetryController
    from deliberation.safety import SafetyGate

    config = load_config()
    clients = _build_clients(config)
    assert "chat" in clients

    guard = clients.get("guard")
    collab = Collaborators(
        chat=clients["chat"],
        gate=SafetyGate(guard, config.prompts) if guard else None,
        retry=RetryController(config.retry),
    )
    request = OrchestrationRequest(
        "Pineapple belongs on pizza", Mode.DEBATE, max_rounds=1, web_search_enabled=False,
    )
    outcome, events = await _drive(request, collab, config)

    assert isinstance(outcome, DebateResult)
    assert outcome.completed
    assert len(outcome.transcript) == 4
    assert all(turn.text for turn in outcome.transcript)
    assert all(len(turn.text) <= config.sanitizer.debater_max_len for turn in outcome.transcript.turns[1:3])
    assert events[-1].type is EventType.COMPLETE

    saved = save_to_file(request.task, Mode.DEBATE, outcome, tmp_path / "output")
    assert "**Winner:**" in saved.read_text(encoding="utf-8")


async def test_plain_chat_end_to_end():
    from config.config_loader import load_config
    from deliberation.cli import _build_clients
    from deliberation.models import Mode, OrchestrationRequest
    from deliberation.orchestrator import Collaborators
    from deliberation.retry import RetryController

    config = load_config()
    clients = _build_clients(config)
    collab = Collaborators(chat=clients["chat"], retry=RetryController(config.retry))

    request = OrchestrationRequest("In one sentence, why is the sky blue?", Mode.PLAIN)
    outcome, _ = await _drive(request, collab, config)
    assert isinstance(outcome, str) and outcome.strip()
