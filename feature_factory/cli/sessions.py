"""Session management commands.

Commands for listing, inspecting, deleting and cleaning up persisted
workflow sessions.
"""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

import typer
from rich.panel import Panel
from rich.table import Table

from feature_factory.cli.common import get_checkpoint_manager, get_config, get_console, get_store
from feature_factory.cli.display import format_cost, format_date, format_level, format_status

if TYPE_CHECKING:
    from feature_factory.config import FactoryConfig

app = typer.Typer(
    name="sessions",
    help="Inspect and clean up workflow sessions",
    no_args_is_help=True,
)

console = get_console()


@app.command("list")
def list_sessions(
    as_json: bool = typer.Option(False, "--json", help="Print sessions as JSON."),
) -> None:
    """
    List sessions, most recently updated first.
    """
    store = get_store(get_config())
    summaries = store.list_sessions()

    if as_json:
        typer.echo(json.dumps([
            {
                "session_id": s.session_id,
                "workflow": s.workflow,
                "description": s.description,
                "status": s.status.value,
                "current_phase": s.current_phase,
                "total_cost_usd": s.total_cost_usd,
                "created_at": s.created_at.isoformat(),
                "last_updated_at": s.last_updated_at.isoformat(),
            }
            for s in summaries
        ], indent=2))
        return

    if not summaries:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Phase", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Updated")

    for s in summaries:
        table.add_row(
            s.session_id,
            s.workflow,
            format_status(s.status),
            str(s.current_phase),
            format_cost(s.total_cost_usd),
            format_date(s.last_updated_at),
        )

    console.print(table)


@app.command("show")
def show_session(
    session_id: str = typer.Argument(..., help="Session to show."),
    show_log: bool = typer.Option(False, "--log", help="Also print the session's log entries."),
    phase_index: Optional[int] = typer.Option(
        None,
        "--phase",
        help="Only log entries of this phase index (with --log).",
    ),
) -> None:
    """
    Show one session with its phase results.
    """
    config = get_config()
    store = get_store(config)
    session = store.load(session_id)
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(1)

    state = session.state
    lines = [
        f"[bold]Workflow:[/bold] {state.workflow_name}",
        f"[bold]Task:[/bold] {state.task_description}",
        f"[bold]Status:[/bold] {format_status(state.status)}",
        f"[bold]Phase index:[/bold] {state.current_phase_index}",
        f"[bold]Cost:[/bold] {format_cost(state.total_cost_usd)} ({state.total_turns} turns)",
        f"[bold]Started:[/bold] {format_date(state.started_at)}",
    ]
    if state.error:
        lines.append(f"[bold]Error:[/bold] [red]{state.error}[/red]")
    console.print(Panel("\n".join(lines), title=session_id))

    if state.phase_results:
        table = Table(title="Phase Results")
        table.add_column("Agent", style="cyan")
        table.add_column("Success")
        table.add_column("Files", justify="right")
        table.add_column("Cost", justify="right")
        for agent_id, result in state.phase_results.items():
            table.add_row(
                agent_id,
                "[green]yes[/green]" if result.success else "[red]no[/red]",
                str(len(result.files_created) + len(result.files_modified)),
                format_cost(result.cost_usd),
            )
        console.print(table)

    if show_log:
        _print_log(config, session_id, phase_index)


def _print_log(config: "FactoryConfig", session_id: str, phase_index: Optional[int]) -> None:
    from feature_factory.logger import ORCHESTRATOR_STREAM, FactoryLogger

    entries = FactoryLogger(ORCHESTRATOR_STREAM, config).entries(
        session_id=session_id,
        phase_index=phase_index,
    )
    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return

    table = Table(title="Log")
    table.add_column("Time", no_wrap=True)
    table.add_column("Level")
    table.add_column("Phase", justify="right")
    table.add_column("Event", style="cyan")
    table.add_column("Detail")
    for entry in entries:
        detail = entry.data.get("error") or entry.data.get("phase") or ""
        table.add_row(
            format_date(entry.timestamp),
            format_level(entry.level),
            "" if entry.phase_index is None else str(entry.phase_index),
            entry.event_type,
            str(detail),
        )
    console.print(table)


@app.command("resumable")
def resumable_session() -> None:
    """
    Show the most recent session that can be resumed.
    """
    store = get_store(get_config())
    session = store.get_resumable()
    if session is None:
        console.print("[dim]No resumable session.[/dim]")
        return

    state = session.state
    console.print(
        f"[cyan]{state.session_id}[/cyan] {state.workflow_name} "
        f"{format_status(state.status)} phase {state.current_phase_index}"
    )


@app.command("delete")
def delete_session(
    session_id: str = typer.Argument(..., help="Session to delete."),
    keep_checkpoints: bool = typer.Option(
        False,
        "--keep-checkpoints",
        help="Keep the session's checkpoint tags.",
    ),
) -> None:
    """
    Delete a session and, by default, its checkpoint tags.
    """
    config = get_config()
    store = get_store(config)

    if not store.delete(session_id):
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise typer.Exit(1)

    console.print(f"[green]Deleted session[/green] {session_id}")
    if not keep_checkpoints:
        deleted = get_checkpoint_manager(config).cleanup_checkpoints(session_id)
        if deleted:
            console.print(f"  Removed {len(deleted)} checkpoint tag(s)")


@app.command("cleanup")
def cleanup_sessions(
    older_than_days: int = typer.Option(
        7,
        "--older-than-days",
        "-d",
        help="Only sessions last updated more than this many days ago.",
    ),
    include_completed: bool = typer.Option(
        True,
        "--completed/--no-completed",
        help="Delete completed sessions.",
    ),
    include_failed: bool = typer.Option(False, "--failed", help="Delete failed sessions."),
    include_cancelled: bool = typer.Option(False, "--cancelled", help="Delete cancelled sessions."),
) -> None:
    """
    Delete old sessions.

    Examples:
        feature-factory sessions cleanup
        feature-factory sessions cleanup --older-than-days 30 --failed
    """
    store = get_store(get_config())
    deleted = store.cleanup(
        older_than_days=older_than_days,
        include_completed=include_completed,
        include_failed=include_failed,
        include_cancelled=include_cancelled,
    )
    if deleted:
        console.print(f"[green]Cleanup complete:[/green] {len(deleted)} session(s) deleted.")
        for session_id in deleted:
            console.print(f"  {session_id}")
    else:
        console.print("[dim]No sessions needed cleanup.[/dim]")
