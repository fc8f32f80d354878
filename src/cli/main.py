"""
Typer CLI for the triple-helix scheduler.

Commands:
    helix show              - Show every tube's positions
    helix ready             - Show the ready stitch of a tube
    helix complete          - Report a completed stitch
    helix advance           - Rotate to the next tube
    helix select            - Make a specific tube active
    helix repair            - Validate and repair stored state
    helix reset             - Discard stored state and start over
    helix export            - Dump stored state as JSON

Usage:
    helix --help
    helix --user alice show
    helix complete 1 stitch-T1-001 20 20 --advance
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from config import Settings, get_settings
from src.helix.codec import MalformedStateError, encode_state
from src.helix.content_provider import ContentProvider, HttpContentProvider, SequenceContentProvider
from src.helix.models import TUBE_INDICES, TripleHelixState
from src.helix.scheduler import TripleHelixScheduler
from src.helix.state_store import JsonStateStore, SqlStateStore, StateStore

app = typer.Typer(
    help="helix CLI: inspect and drive a learner's Triple-Helix tubes",
    no_args_is_help=True,
)

console = Console()


# ========================================
# Context Builder (Dependency Injection)
# ========================================


class CLIContext:
    """
    Dependency injection container for CLI commands.

    Lazily builds the store, content provider and scheduler.
    """

    def __init__(self, user_id: str | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.user_id = user_id or self.settings.default_user_id
        self._store: StateStore | None = None
        self._provider: ContentProvider | None = None
        self._scheduler: TripleHelixScheduler | None = None

    @property
    def store(self) -> StateStore:
        if self._store is None:
            if self.settings.state_backend == "sql":
                from sqlalchemy import create_engine

                self._store = SqlStateStore(create_engine(self.settings.database_url))
            else:
                self._store = JsonStateStore(self.settings.state_dir)
        return self._store

    @property
    def provider(self) -> ContentProvider:
        if self._provider is None:
            if self.settings.has_content_api():
                self._provider = HttpContentProvider(
                    base_url=self.settings.content_api_url,
                    api_key=self.settings.content_api_key,
                    timeout=self.settings.content_api_timeout,
                )
            else:
                self._provider = SequenceContentProvider.generate(self.settings.stitches_per_tube)
        return self._provider

    @property
    def scheduler(self) -> TripleHelixScheduler:
        if self._scheduler is None:
            self._scheduler = TripleHelixScheduler(
                user_id=self.user_id,
                store=self.store,
                content_provider=self.provider,
                allow_promotion_fallback=self.settings.allow_promotion_fallback,
                completion_history_limit=self.settings.completion_history_limit,
            )
        return self._scheduler

    def close(self) -> None:
        if isinstance(self._provider, HttpContentProvider):
            self._provider.close()


def configure_logging(level: str, log_file: str | None = None) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if log_file:
        logger.add(log_file, level="DEBUG", rotation="10 MB", retention=5)


@app.callback()
def main_callback(
    ctx: typer.Context,
    user: str | None = typer.Option(None, "--user", "-u", help="Learner id"),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
):
    """Triple-Helix scheduler tools."""
    settings = get_settings()
    configure_logging((log_level or settings.log_level).upper(), settings.log_file)
    cli_ctx = CLIContext(user_id=user, settings=settings)
    ctx.obj = cli_ctx
    ctx.call_on_close(cli_ctx.close)


def _scheduler(ctx: typer.Context) -> TripleHelixScheduler:
    return ctx.obj.scheduler


def _load_state(ctx: typer.Context) -> TripleHelixState:
    try:
        return _scheduler(ctx).get_state()
    except MalformedStateError as e:
        console.print(f"[red]Stored state is unreadable:[/red] {e}")
        raise typer.Exit(1) from e


def _check_tube(tube: int) -> None:
    if tube not in TUBE_INDICES:
        console.print(f"[red]Tube must be 1, 2 or 3 (got {tube})[/red]")
        raise typer.Exit(2)


def _tube_table(state: TripleHelixState, index: int, limit: int | None = None) -> Table:
    tube = state.tube(index)
    marker = " (active)" if index == state.active_tube else ""
    table = Table(title=f"Tube {index}{marker}", title_justify="left")
    table.add_column("Pos", justify="right", style="cyan")
    table.add_column("Stitch")
    table.add_column("Skip", justify="right")
    table.add_column("Level")
    table.add_column("Perfect", justify="right")
    table.add_column("Last completed", style="dim")

    entries = tube.positions.all()
    for position, slot in entries[:limit] if limit else entries:
        table.add_row(
            str(position),
            f"[bold green]{slot.stitch_id}[/bold green]" if position == 0 else slot.stitch_id,
            str(slot.skip_number),
            slot.distractor_level,
            str(slot.perfect_completions),
            slot.last_completed.strftime("%Y-%m-%d %H:%M") if slot.last_completed else "-",
        )
    if limit and len(entries) > limit:
        table.caption = f"{len(entries) - limit} more"
    return table


# ========================================
# Commands
# ========================================


@app.command()
def show(
    ctx: typer.Context,
    tube: int | None = typer.Option(None, "--tube", "-t", help="Only this tube"),
    limit: int | None = typer.Option(10, "--limit", "-n", help="Rows per tube (0 for all)"),
):
    """Show every tube's positions."""
    state = _load_state(ctx)
    console.print(
        f"[bold]{state.user_id}[/bold]  active tube: {state.active_tube}  cycles: {state.cycle_count}"
    )
    indices = (tube,) if tube else TUBE_INDICES
    for index in indices:
        _check_tube(index)
        console.print(_tube_table(state, index, limit or None))


@app.command()
def ready(
    ctx: typer.Context,
    tube: int | None = typer.Argument(None, help="Tube number (defaults to the active tube)"),
):
    """Show the ready stitch of a tube."""
    state = _load_state(ctx)
    index = tube or state.active_tube
    _check_tube(index)
    slot = state.tube(index).ready_slot
    if slot is None:
        console.print(f"Tube {index} is empty")
        return
    console.print(f"Tube {index}: [bold green]{slot.stitch_id}[/bold green] (skip {slot.skip_number})")


@app.command()
def complete(
    ctx: typer.Context,
    tube: int = typer.Argument(..., help="Tube number"),
    stitch_id: str = typer.Argument(..., help="Completed stitch id"),
    correct: int = typer.Argument(..., help="Correct answers"),
    total: int = typer.Argument(..., help="Total questions"),
    advance: bool = typer.Option(False, "--advance", "-a", help="Rotate to the next tube afterwards"),
):
    """Report a completed stitch."""
    _check_tube(tube)
    result = _scheduler(ctx).complete(tube, stitch_id, correct, total, advance=advance)

    if result.stale:
        console.print(f"[yellow]{stitch_id} is not the ready stitch in tube {tube}; positions unchanged[/yellow]")
        return
    if not result.success:
        console.print(f"[red]{result.error}[/red]")
        raise typer.Exit(1)

    if result.perfect:
        console.print(f"[green]Perfect![/green] {stitch_id} requeued at position {result.new_skip}")
    else:
        console.print(f"{stitch_id}: {correct}/{total}, stays ready")
    if result.repair and result.repair.changed:
        for action in result.repair.actions:
            console.print(f"  [dim]{action}[/dim]")
    ready_id = result.ready.stitch_id if result.ready else "-"
    console.print(f"Ready in tube {tube}: [bold]{ready_id}[/bold]  active tube: {result.active_tube}")


@app.command()
def advance(ctx: typer.Context):
    """Rotate to the next tube."""
    result = _scheduler(ctx).advance_active_tube()
    suffix = " (new cycle)" if result.wrapped else ""
    console.print(f"Active tube: {result.previous_tube} -> [bold]{result.state.active_tube}[/bold]{suffix}")


@app.command()
def select(
    ctx: typer.Context,
    tube: int = typer.Argument(..., help="Tube number"),
):
    """Make a specific tube active."""
    result = _scheduler(ctx).select_tube(tube)
    if not result.success:
        console.print(f"[red]{result.error}[/red]")
        raise typer.Exit(1)
    console.print(f"Active tube: [bold]{result.state.active_tube}[/bold]")


@app.command()
def repair(ctx: typer.Context):
    """Validate and repair stored state."""
    try:
        reports = _scheduler(ctx).repair()
    except MalformedStateError as e:
        console.print(f"[red]Stored state is unreadable:[/red] {e}")
        raise typer.Exit(1) from e

    for index, report in reports.items():
        if not report.changed and not report.errors:
            console.print(f"Tube {index}: [green]ok[/green]")
            continue
        console.print(f"Tube {index}: [yellow]{len(report.actions)} repairs[/yellow]")
        for action in report.actions:
            console.print(f"  {action}")
        for error in report.errors:
            console.print(f"  [red]{error}[/red]")


@app.command()
def reset(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Discard stored state and start over."""
    scheduler = _scheduler(ctx)
    if not yes and not typer.confirm(f"Reset all progress for {scheduler.user_id}?"):
        raise typer.Abort()
    state = scheduler.reset()
    console.print(f"Reset {state.user_id}; ready stitches: " + ", ".join(
        f"T{index}={state.tube(index).ready_slot.stitch_id if state.tube(index).ready_slot else '-'}"
        for index in TUBE_INDICES
    ))


@app.command()
def export(
    ctx: typer.Context,
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
):
    """Dump stored state as JSON."""
    document = json.dumps(encode_state(_load_state(ctx)), indent=2)
    if output:
        output.write_text(document, encoding="utf-8")
        console.print(f"Wrote {output}")
    else:
        typer.echo(document)


def main():
    app()


if __name__ == "__main__":
    main()
