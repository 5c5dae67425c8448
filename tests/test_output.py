"""Tests for deliberation/output.py."""

from pathlib import Path

import pytest
from rich.console import Console

from deliberation.events import Event
from deliberation.models import (
    ConvergenceResult,
    ConvergenceState,
    ConvergenceStatus,
    DebateResult,
    Mode,
    Speaker,
    Transcript,
    Turn,
)
from deliberation.output import EventRenderer, _slug, save_to_file


def test_slug_basic():
    assert _slug("Should cities build more bike lanes?") == "should-cities-build-more-bike-lanes"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars_and_empty():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result
    assert _slug("???") == "task"


@pytest.fixture
def debate_result() -> DebateResult:
    transcript = Transcript(limit=4)
    transcript.append(Turn(Speaker.MODERATOR, 0, "Welcome to the debate."))
    transcript.append(Turn(Speaker.BLUE, 1, "Lanes save lives.", frozenset({"https://example.org/for"})))
    transcript.append(Turn(Speaker.RED, 1, "Lanes cost parking."))
    transcript.append(Turn(Speaker.MODERATOR, 2, "Blue wins this one."))
    return DebateResult("Bike lanes", transcript, Speaker.BLUE, winner=Speaker.BLUE, completed=True)


@pytest.fixture
def convergence_result() -> ConvergenceResult:
    transcript = Transcript(limit=4)
    transcript.append(Turn(Speaker.JUDGE, 0, "Focus on a waitlist launch."))
    transcript.append(Turn(Speaker.EXECUTOR, 1, "Week 1: open the waitlist."))
    state = ConvergenceState(round=1, max_rounds=4, score=86, status=ConvergenceStatus.CONVERGED)
    return ConvergenceResult("Launch plan", transcript, state, final_text="Week 1: open the waitlist.", completed=True)


def test_save_debate_creates_nested_dir(tmp_path: Path, debate_result: DebateResult):
    output_dir = tmp_path / "nested" / "output"
    saved = save_to_file("Bike lanes", Mode.DEBATE, debate_result, output_dir)
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.name.endswith("_bike-lanes.md")


def test_save_debate_content(tmp_path: Path, debate_result: DebateResult):
    content = save_to_file("Bike lanes", Mode.DEBATE, debate_result, tmp_path).read_text(encoding="utf-8")
    assert "# Deliberation (debate): Bike lanes" in content
    assert "**Winner:** Blue" in content
    assert "### Blue (round 1)" in content
    assert "- https://example.org/for" in content
    assert "### Moderator\n" in content


def test_save_convergence_content(tmp_path: Path, convergence_result: ConvergenceResult):
    content = save_to_file("Launch plan", Mode.CONVERGENT, convergence_result, tmp_path).read_text(encoding="utf-8")
    assert "**Score:** 86" in content
    assert "**Status:** converged" in content
    assert "## Final answer\n\nWeek 1: open the waitlist." in content


def test_save_plain_reply_with_slug_override(tmp_path: Path):
    saved = save_to_file("Explain tides", Mode.PLAIN, "The moon pulls the sea.", tmp_path, slug_override="tides")
    assert saved.name.endswith("_tides.md")
    assert "## Reply\n\nThe moon pulls the sea." in saved.read_text(encoding="utf-8")


def _renderer(show_reasoning: bool = False) -> tuple[EventRenderer, Console]:
    out = Console(record=True, width=100)
    return EventRenderer(out, show_reasoning=show_reasoning), out


def test_renderer_prints_one_panel_per_turn():
    renderer, out = _renderer()
    renderer.handle(Event.start(Speaker.BLUE, 1))
    renderer.handle(Event.content("Lanes", Speaker.BLUE))
    renderer.handle(Event.content("Lanes save lives.", Speaker.BLUE))
    renderer.handle(Event.start(Speaker.RED, 1))
    renderer.handle(Event.content("Parking matters.", Speaker.RED))
    renderer.close()

    text = out.export_text()
    assert text.count("Lanes save lives.") == 1
    assert "Blue round 1" in text
    assert "Parking matters." in text


def test_renderer_tracks_final_text_and_errors():
    renderer, out = _renderer()
    renderer.handle(Event.done("All set."))
    renderer.handle(Event.error("Something broke.", "upstream_error"))
    assert renderer.final_text == "All set."
    assert renderer.error == "Something broke."
    assert "Something broke." in out.export_text()


def test_renderer_hides_reasoning_unless_asked():
    quiet, quiet_out = _renderer()
    quiet.handle(Event.reasoning("secret plan", Speaker.ASSISTANT))
    assert "secret plan" not in quiet_out.export_text()

    loud, loud_out = _renderer(show_reasoning=True)
    loud.handle(Event.reasoning("secret plan", Speaker.ASSISTANT))
    assert "secret plan" in loud_out.export_text()
