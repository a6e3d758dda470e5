"""coderelay CLI - typer application entry point."""

from __future__ import annotations

import asyncio
import atexit
import os
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from coderelay.models.operations import CreateFolder, Delete, Move, WriteFile
from coderelay.observability import CallLogger, close_file_logging, configure_logging, get_logger
from coderelay.pipeline.config import (
    VALID_MODES,
    VALID_PHASE_COUNTS,
    ProjectConfigError,
    load_project_config,
)
from coderelay.pipeline.cancellation import CancellationToken
from coderelay.pipeline.interpreter import parse_response, strip_think
from coderelay.pipeline.scheduler import RateWindowRegistry, TokenBudgetScheduler
from coderelay.providers.factory import ChatModelResolver
from coderelay.providers.gateway import CallGateway
from coderelay.providers.model_info import get_rate_limits
from coderelay.session import Session, SessionSettings
from coderelay.workspace import load_directory, sync_to_directory

if TYPE_CHECKING:
    from coderelay.models.operations import FileOperation, OperationResult
    from coderelay.models.pipeline import PipelineState
    from coderelay.session import SubmissionResult

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="coderelay",
    help="coderelay: multi-phase LLM code generation against a project tree.",
    no_args_is_help=True,
)
console = Console()

# Global state for logging flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False

STATUS_ICONS = {
    "pending": "[dim]○[/dim] pending",
    "running": "[yellow]…[/yellow] running",
    "completed": "[green]✓[/green] completed",
    "skipped": "[dim]-[/dim] skipped",
    "error": "[red]✗[/red] error",
}


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log: Annotated[
        bool,
        typer.Option(
            "--log",
            help="Enable file logging to {project}/logs/ (debug.jsonl, model_calls.jsonl).",
        ),
    ] = False,
) -> None:
    """coderelay: multi-phase LLM code generation against a project tree."""
    global _verbose, _log_enabled
    _verbose = verbose
    _log_enabled = log

    # Console logging only; file logging waits until the project is known
    configure_logging(verbosity=verbose)


def _configure_project_logging(project_path: Path) -> None:
    if _log_enabled:
        configure_logging(verbosity=_verbose, log_to_file=True, project_path=project_path)
        atexit.register(close_file_logging)


class _ConsoleProgress:
    """Prints each phase transition once."""

    def __init__(self) -> None:
        self.last_state: PipelineState | None = None
        self._seen: dict[str, str] = {}

    def on_progress(self, state: PipelineState) -> None:
        self.last_state = state
        for phase in state.phases:
            if self._seen.get(phase.id) == phase.status:
                continue
            self._seen[phase.id] = phase.status
            if phase.status != "pending":
                console.print(f"  {STATUS_ICONS[phase.status]}  {phase.title}")


def _print_phase_table(state: PipelineState) -> None:
    table = Table(title="Pipeline")
    table.add_column("Phase", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Replicas", justify="right")
    for phase in state.phases:
        table.add_row(
            phase.title,
            STATUS_ICONS.get(phase.status, phase.status),
            str(len(phase.sub_results)) if phase.sub_results else "-",
        )
    console.print(table)


def _describe(operation: FileOperation) -> tuple[str, str]:
    match operation:
        case WriteFile(path=path, literal=literal):
            return "write", f"{path} (literal)" if literal else path
        case Move(source=source, destination=destination):
            return "move", f"{source} -> {destination}"
        case CreateFolder(path=path) | Delete(path=path):
            return operation.op, path
    return operation.op, ""


def _print_operations(operations: list[FileOperation]) -> None:
    table = Table(title="Operations")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Op", style="cyan")
    table.add_column("Target")
    for i, operation in enumerate(operations, 1):
        table.add_row(str(i), *_describe(operation))
    console.print(table)


def _print_results(results: list[OperationResult]) -> None:
    table = Table(title="Applied")
    table.add_column("Op", style="cyan")
    table.add_column("Result")
    for result in results:
        icon = "[green]✓[/green]" if result.success else f"[red]✗ {result.error}[/red]"
        table.add_row(result.operation.op, f"{icon} {result.message}")
    console.print(table)


async def _submit(session: Session, prompt: str) -> SubmissionResult:
    """Run a submission, turning Ctrl-C into cooperative cancellation."""
    cancellation = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancellation.cancel)
    except (NotImplementedError, RuntimeError):
        # No loop signal support (Windows, non-main thread): Ctrl-C interrupts instead
        return await session.submit(prompt, cancellation=cancellation)
    try:
        return await session.submit(prompt, cancellation=cancellation)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


@app.command()
def version() -> None:
    """Show version information."""
    from coderelay import __version__

    console.print(f"coderelay v{__version__}")


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(help="What to build or change.")],
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory (default: current directory)."),
    ] = Path(),
    mode: Annotated[
        str | None,
        typer.Option("--mode", "-m", help="Submission mode: chat, simple or advanced."),
    ] = None,
    phases: Annotated[
        int | None,
        typer.Option("--phases", help="Pipeline phase count: 3, 6, 9 or 12."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show operations without writing them to disk."),
    ] = False,
) -> None:
    """Run one submission against a project directory."""
    log = get_logger(__name__)

    if not project.is_dir():
        console.print(f"[red]Error:[/red] Project directory not found: {project}")
        raise typer.Exit(1)
    if mode is not None and mode not in VALID_MODES:
        choices = ", ".join(VALID_MODES)
        console.print(f"[red]Error:[/red] Invalid mode {mode!r}. Choose from {choices}.")
        raise typer.Exit(1)
    if phases is not None and phases not in VALID_PHASE_COUNTS:
        console.print(
            f"[red]Error:[/red] Invalid phase count {phases}. Choose from {VALID_PHASE_COUNTS}."
        )
        raise typer.Exit(1)

    try:
        config = load_project_config(project)
        settings = SessionSettings.from_config(config)
    except (ProjectConfigError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None
    if mode is not None:
        settings.mode = mode  # type: ignore[assignment]
    if phases is not None:
        settings.phase_count = phases

    _configure_project_logging(project)
    virtual = load_directory(project)
    log.info("run_start", project=config.name, mode=settings.mode, phases=settings.phase_count)

    gateway = CallGateway(
        ChatModelResolver(),
        call_logger=CallLogger(project, enabled=_log_enabled),
    )
    scheduler = TokenBudgetScheduler(RateWindowRegistry(get_rate_limits(config.rate_limits)))
    progress = _ConsoleProgress()
    session = Session(
        gateway,
        scheduler,
        virtual,
        settings,
        context_provider=virtual.serialize_context,
        observer=progress,
        on_status=lambda message: console.print(f"  [dim]{message}[/dim]"),
    )

    console.print()
    console.print(f"[dim]Running {settings.mode} submission on {config.name}...[/dim]")
    try:
        result = asyncio.run(_submit(session, prompt))
    except KeyboardInterrupt:
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(130) from None

    console.print()
    if progress.last_state is not None:
        _print_phase_table(progress.last_state)

    if result.cancelled:
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(130)
    if result.error is not None:
        console.print(f"[red]✗[/red] Submission failed: {result.error}")
        raise typer.Exit(1)

    if result.summary:
        console.print(Panel(Markdown(result.summary), title="Summary"))
    if result.results:
        _print_results(result.results)

    if dry_run:
        console.print("[dim]Dry run: no files written.[/dim]")
        return
    if result.results:
        report = sync_to_directory(virtual, project)
        console.print(
            f"[green]✓[/green] Wrote {len(report.written)} file(s), "
            f"removed {len(report.removed)} path(s)"
        )
    if _log_enabled:
        console.print(f"  Logs: [dim]{project / 'logs'}[/dim]")


@app.command()
def parse(
    file: Annotated[Path, typer.Argument(help="Saved model response to interpret.")],
) -> None:
    """Interpret a saved model response and show its summary and operations."""
    if not file.is_file():
        console.print(f"[red]Error:[/red] File not found: {file}")
        raise typer.Exit(1)

    parsed = parse_response(strip_think(file.read_text(encoding="utf-8")))
    if parsed.summary:
        console.print(Panel(Markdown(parsed.summary), title="Summary"))
    if parsed.operations:
        _print_operations(parsed.operations)
    else:
        console.print("[dim]No file operations.[/dim]")


@app.command()
def doctor() -> None:
    """Check API key configuration and local provider connectivity."""
    console.print("[bold]coderelay Doctor[/bold]")
    console.print()

    configured = [
        name
        for name in ("GOOGLE_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY")
        if os.getenv(name)
    ]
    for name in configured:
        console.print(f"  [green]✓[/green] {name} is set")

    ollama_ok = True
    if os.getenv("OLLAMA_HOST"):
        ollama_ok = asyncio.run(_check_ollama())
        configured.append("OLLAMA_HOST")
    else:
        console.print("  [dim]○[/dim] ollama: Skipped (OLLAMA_HOST not set)")

    console.print()
    if not configured:
        console.print("[yellow]No provider configured.[/yellow] Set GOOGLE_API_KEY in .env.")
        raise typer.Exit(1)
    if not ollama_ok:
        raise typer.Exit(1)
    console.print("[green]All checks passed![/green]")


async def _check_ollama() -> bool:
    """Check Ollama connectivity and list models."""
    import json

    import httpx

    host = os.getenv("OLLAMA_HOST")
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(f"{host}/api/tags")
            if response.status_code != 200:
                console.print(f"  [red]✗[/red] ollama: HTTP {response.status_code}")
                return False
            models = [m.get("name", "") for m in response.json().get("models", [])]
    except httpx.ConnectError:
        console.print(f"  [red]✗[/red] ollama: Connection refused ({host})")
        return False
    except httpx.TimeoutException:
        console.print(f"  [red]✗[/red] ollama: Connection timeout ({host})")
        return False
    except httpx.RequestError as e:
        console.print(f"  [red]✗[/red] ollama: Request error - {e}")
        return False
    except json.JSONDecodeError:
        console.print("  [red]✗[/red] ollama: Invalid JSON response")
        return False

    if models:
        model_list = ", ".join(models[:5])
        if len(models) > 5:
            model_list += f", +{len(models) - 5} more"
        console.print(f"  [green]✓[/green] ollama: Connected ({model_list})")
    else:
        console.print("  [yellow]![/yellow] ollama: Connected (no models pulled)")
    return True
