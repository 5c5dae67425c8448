"""Click CLI: config loading, upstream selection, live event rendering, transcript save."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config.config_loader import AppConfig, load_config
from deliberation.emitter import StreamingEmitter
from deliberation.healthcheck import run_health_checks
from deliberation.models import Attachment, Mode, OrchestrationRequest
from deliberation.orchestrator import Collaborators, Outcome, orchestrate
from deliberation.output import EventRenderer, SseRenderer, save_to_file
from deliberation.providers.anthropic import AnthropicProvider
from deliberation.providers.base import UpstreamClient
from deliberation.providers.gemini import GeminiProvider
from deliberation.providers.openai_provider import OpenAIProvider
from deliberation.retry import RetryController
from deliberation.safety import SafetyGate
from deliberation.search import WikipediaLookup
from deliberation.taskfile import load_attachment, parse_task_file

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[UpstreamClient]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_clients(config: AppConfig) -> dict[str, UpstreamClient]:
    """Build a client for every role that has an API key. Returns dict keyed by role."""
    clients: dict[str, UpstreamClient] = {}
    for role in sorted(config.available_providers):
        model_cfg = config.models[role]
        if model_cfg.sdk not in PROVIDER_CLASSES:
            logger.warning("Role '%s' uses unknown sdk '%s', skipping", role, model_cfg.sdk)
            continue
        try:
            clients[role] = PROVIDER_CLASSES[model_cfg.sdk](model_cfg)
        except Exception as exc:
            logger.warning("Failed to instantiate client for role '%s': %s", role, exc)
    return clients


def _check_and_filter_clients(clients: dict[str, UpstreamClient]) -> dict[str, UpstreamClient]:
    """Run health checks and drop failing roles. Exits if the chat role fails."""
    console.print("\n[bold]Checking upstreams...[/bold]")
    results = asyncio.run(run_health_checks(clients))

    failed: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed.append(name)

    if "chat" in failed:
        console.print("\n[bold red]Error:[/bold red] The chat upstream failed its health check.")
        sys.exit(1)

    if failed and not click.confirm(f"Continue without {', '.join(failed)}?", default=True):
        sys.exit(0)

    console.print()
    return {n: c for n, c in clients.items() if n not in failed}


def _load_attachments(paths: list[Path]) -> tuple[list[Attachment], list[str]]:
    """Returns (attachments, notices). Unsupported files become notices."""
    attachments: list[Attachment] = []
    notices: list[str] = []
    for path in paths:
        try:
            attachments.append(load_attachment(path))
        except (ValueError, OSError) as exc:
            logger.warning("Skipping attachment %s: %s", path, exc)
            notices.append(f"[Attachment notice: {path.name}] {exc}")
    return attachments, notices


async def _run(
    request: OrchestrationRequest,
    collab: Collaborators,
    config: AppConfig,
    renderer: EventRenderer | SseRenderer,
) -> Outcome:
    """Run the orchestrator and render its events concurrently."""
    emitter = StreamingEmitter(maxsize=config.defaults.event_buffer)
    producer = asyncio.create_task(orchestrate(request, collab, config, emitter))
    try:
        async for event in emitter:
            renderer.handle(event)
    finally:
        renderer.close()
        if not producer.done():
            emitter.close("renderer stopped")
    outcome = await producer
    if isinstance(collab.lookup, WikipediaLookup):
        await collab.lookup.aclose()
    return outcome


@click.command()
@click.argument("task", required=False)
@click.option("--mode", type=click.Choice([m.value for m in Mode]), default=None,
              help="debate, convergent or plain (default: from config)")
@click.option("--rounds", default=None, type=int, help="Rounds (debate: clamped to 1-5; convergent: max rounds)")
@click.option("--attach", "attach_paths", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Image or PDF to include (repeatable)")
@click.option("--web-search/--no-web-search", "web_search", default=None,
              help="Look up web context (default: on for debate, off otherwise)")
@click.option("--file", "task_file", type=click.Path(exists=True, dir_okay=False),
              help="Read the task from a .md file with optional front matter")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--timeout", "timeout_sec", default=None, type=float, help="Request deadline in seconds")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging and show reasoning")
@click.option("--sse", is_flag=True, help="Write events to stdout as server-sent-events frames")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def main(
    task: str | None,
    mode: str | None,
    rounds: int | None,
    attach_paths: tuple[str, ...],
    web_search: bool | None,
    task_file: str | None,
    output_path: str | None,
    timeout_sec: float | None,
    verbose: bool,
    sse: bool,
    skip_health_check: bool,
) -> None:
    """Deliberation -- multi-agent debate and convergent thinking in the terminal.

    \b
    Examples:
      deliberation "Remote work beats office work" --mode debate --rounds 3
      deliberation "Plan a migration from REST to gRPC" --mode convergent
      deliberation "Summarize this" --attach report.pdf --mode plain
      deliberation --file task.md
    """
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    # CLI flags win; front matter only fills in what the CLI left unset
    file_mode = file_rounds = file_web = None
    file_attachments: list[Path] = []
    slug_override: str | None = None
    if task_file:
        try:
            parsed = parse_task_file(Path(task_file))
        except ValueError as exc:
            console.print(f"[bold red]Task file error:[/bold red] {exc}")
            sys.exit(1)
        task_text = parsed.text
        file_mode, file_rounds, file_web = parsed.mode, parsed.rounds, parsed.web_search
        file_attachments = parsed.attachments
        slug_override = Path(task_file).stem
    elif task:
        task_text = task
    else:
        console.print("[bold red]Error:[/bold red] Provide a TASK argument or --file.")
        sys.exit(1)

    effective_mode = Mode(mode) if mode else file_mode or Mode(config.defaults.mode)
    effective_rounds = rounds if rounds is not None else file_rounds
    effective_web = web_search if web_search is not None else file_web
    effective_output = Path(output_path) if output_path else config.defaults.output_dir
    if timeout_sec is not None:
        config.defaults.request_timeout_sec = timeout_sec

    attachments, notices = _load_attachments([Path(p) for p in attach_paths] + file_attachments)
    if notices:
        task_text = "\n\n".join([task_text, *notices])

    clients = _build_clients(config)
    if "chat" not in clients:
        console.print("[bold red]Error:[/bold red] No chat upstream available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        clients = _check_and_filter_clients(clients)

    guard = clients.get("guard")
    collab = Collaborators(
        chat=clients["chat"],
        vision=clients.get("vision"),
        gate=SafetyGate(guard, config.prompts) if guard is not None else None,
        lookup=WikipediaLookup(),
        retry=RetryController(config.retry),
    )
    request = OrchestrationRequest(
        task=task_text,
        mode=effective_mode,
        attachments=attachments,
        max_rounds=effective_rounds,
        web_search_enabled=effective_web,
    )

    if sse:
        renderer: EventRenderer | SseRenderer = SseRenderer()
    else:
        preview = task_text[:80] + ("..." if len(task_text) > 80 else "")
        console.print(f"\n[bold cyan]Deliberation[/bold cyan] [{effective_mode.value}]")
        console.print(f"Task: [italic]{preview}[/italic]\n")
        renderer = EventRenderer(console, show_reasoning=verbose)
    outcome = asyncio.run(_run(request, collab, config, renderer))

    if outcome is None:
        sys.exit(1)

    saved_path = save_to_file(task_text, effective_mode, outcome, effective_output, slug_override)
    if sse:
        click.echo(f"Saved to: {saved_path}", err=True)
    else:
        console.print(f"\n[dim]Saved to: {saved_path}[/dim]")


if __name__ == "__main__":
    main()
