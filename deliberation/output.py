"""Rich console rendering of the event stream and markdown transcript save."""

import logging
import re
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from deliberation.events import Event, EventType, to_sse
from deliberation.models import ConvergenceResult, DebateResult, Mode, Speaker, Transcript

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STYLES = {
    Speaker.MODERATOR.value: "yellow",
    Speaker.BLUE.value: "blue",
    Speaker.RED.value: "red",
    Speaker.JUDGE.value: "magenta",
    Speaker.DEBATER_A.value: "cyan",
    Speaker.DEBATER_B.value: "green",
    Speaker.EXECUTOR.value: "bold green",
    Speaker.ASSISTANT.value: "white",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len] or "task"


class EventRenderer:
    """Prints events as they arrive. Content is cumulative, so each turn is
    buffered and printed once as a panel when the next turn starts."""

    def __init__(self, out: Console | None = None, show_reasoning: bool = False) -> None:
        self.out = out or console
        self.show_reasoning = show_reasoning
        self._speaker: str | None = None
        self._title = ""
        self._content = ""
        self.final_text = ""
        self.error: str | None = None

    def _flush(self) -> None:
        if self._speaker and self._content:
            self.out.print(Panel(self._content, title=self._title, border_style=_STYLES.get(self._speaker, "dim")))
        self._speaker = None
        self._content = ""

    def handle(self, event: Event) -> None:
        data = event.data
        if event.type is EventType.START:
            self._flush()
            self._speaker = data["speaker"]
            label = f"[bold]{Speaker(data['speaker']).label}[/bold]"
            self._title = f"{label} (verdict)" if data.get("isVerdict") else f"{label} round {data['round']}"
        elif event.type is EventType.CONTENT:
            speaker = data.get("speaker")
            if speaker and speaker != self._speaker:
                self._flush()
                self._speaker = speaker
                self._title = f"[bold]{Speaker(speaker).label}[/bold]"
            self._content = data["text"]
        elif event.type is EventType.REASONING:
            if self.show_reasoning:
                self.out.print(Text(data["text"][-200:], style="dim italic"))
        elif event.type is EventType.STATUS:
            self.out.print(Text(data["text"], style="dim"))
        elif event.type is EventType.WEB_SEARCH_START:
            self.out.print(Text("Searching the web...", style="dim"))
        elif event.type is EventType.WEB_SEARCH_DONE:
            side = f" ({Speaker(data['speaker']).label})" if data.get("speaker") else ""
            self.out.print(Text(f"Sources{side}: {len(data['sources'])}", style="dim"))
            for url in data["sources"]:
                self.out.print(Text(f"  {url}", style="dim"))
        elif event.type in (EventType.CONVERGENT_START, EventType.CONVERGENCE_STATE):
            self.out.print(Text(
                f"Convergence: round {data['round']}/{data['maxRounds']}, "
                f"score {data['score']}, {data['status']}",
                style="bold magenta",
            ))
        elif event.type is EventType.CLARIFYING_QUESTIONS:
            self._flush()
            self.out.print(Rule("[bold yellow]Clarifying questions[/bold yellow]"))
            for i, question in enumerate(data["questions"], 1):
                self.out.print(f"{i}. {question}")
        elif event.type is EventType.DONE:
            self._speaker = None
            self._content = ""
            self.final_text = data["finalText"]
            self.out.print(Rule("[bold green]Final answer[/bold green]"))
            self.out.print(Markdown(self.final_text))
        elif event.type is EventType.ERROR:
            self._flush()
            self.error = data["message"]
            self.out.print(f"[bold red]Error:[/bold red] {self.error}")
        elif event.type is EventType.COMPLETE:
            self._flush()
            self.out.print(Rule("[bold green]Debate complete[/bold green]"))

    def close(self) -> None:
        self._flush()


class SseRenderer:
    """Writes each event to stdout as a server-sent-events frame, for piping."""

    def handle(self, event: Event) -> None:
        click.echo(to_sse(event), nl=False)

    def close(self) -> None:
        pass


def _transcript_lines(transcript: Transcript) -> list[str]:
    lines: list[str] = []
    for turn in transcript:
        heading = turn.speaker.label if turn.round == 0 else f"{turn.speaker.label} (round {turn.round})"
        lines += [f"### {heading}", "", turn.text, ""]
        if turn.sources:
            lines += ["Sources:", *(f"- {url}" for url in sorted(turn.sources)), ""]
    return lines


def save_to_file(
    task: str,
    mode: Mode,
    outcome: DebateResult | ConvergenceResult | str,
    output_dir: Path,
    slug_override: str | None = None,
) -> Path:
    """Save a finished session as a markdown file.

    Args:
        task: The task or topic as the user gave it.
        mode: Which controller produced the outcome.
        outcome: The controller's result (plain mode returns the reply text).
        output_dir: Directory to save the file in.
        slug_override: Filename stem to use instead of one derived from the task.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(task)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# Deliberation ({mode.value}): {task[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Mode:** {mode.value}",
    ]

    if isinstance(outcome, DebateResult):
        winner = outcome.winner.label if outcome.winner else "undetermined"
        lines += [
            f"**First speaker:** {outcome.first_speaker.label}",
            f"**Winner:** {winner}",
            f"**Completed:** {'yes' if outcome.completed else 'no'}",
            "",
            "---",
            "",
            *_transcript_lines(outcome.transcript),
        ]
    elif isinstance(outcome, ConvergenceResult):
        state = outcome.state
        lines += [
            f"**Rounds:** {state.round}/{state.max_rounds}",
            f"**Score:** {state.score}",
            f"**Status:** {state.status.value}",
            "",
            "---",
            "",
            *_transcript_lines(outcome.transcript),
            "## Final answer",
            "",
            outcome.final_text,
            "",
        ]
    else:
        lines += ["", "---", "", "## Reply", "", outcome, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Session saved to: %s", filepath)
    return filepath
