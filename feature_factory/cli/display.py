"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for statuses, costs, dates and workflow
events. This module should NOT import from the command modules.
"""
from __future__ import annotations

from datetime import datetime

from rich.console import Console

from feature_factory.events import EventType, WorkflowEvent
from feature_factory.models import WorkflowStatus

STATUS_DISPLAY: dict[WorkflowStatus, tuple[str, str]] = {
    WorkflowStatus.RUNNING: ("Running", "cyan bold"),
    WorkflowStatus.AWAITING_APPROVAL: ("Awaiting Approval", "yellow bold"),
    WorkflowStatus.COMPLETED: ("Completed", "green"),
    WorkflowStatus.FAILED: ("Failed", "red"),
    WorkflowStatus.CANCELLED: ("Cancelled", "dim"),
}

LEVEL_STYLES: dict[str, str] = {
    "debug": "dim",
    "info": "white",
    "warn": "yellow",
    "error": "red",
}


def format_status(status: WorkflowStatus) -> str:
    """Format a workflow status with Rich markup."""
    label, style = STATUS_DISPLAY.get(status, (status.value, "white"))
    return f"[{style}]{label}[/{style}]"


def format_cost(cost_usd: float) -> str:
    """Format a cost value."""
    return f"${cost_usd:.2f}"


def format_date(value: datetime) -> str:
    """Format a timestamp for tables."""
    return value.strftime("%Y-%m-%d %H:%M")


def format_level(level: str) -> str:
    """Format a log level with Rich markup."""
    style = LEVEL_STYLES.get(level, "white")
    return f"[{style}]{level}[/{style}]"


def render_event(console: Console, event: WorkflowEvent) -> None:
    """Print one workflow event."""
    kind = event.event_type

    if kind == EventType.WORKFLOW_STARTED:
        console.print(
            f"[bold]Started[/bold] {event.payload.get('workflow')} "
            f"({event.total_phases} phases) session [cyan]{event.session_id}[/cyan]"
        )
    elif kind == EventType.WORKFLOW_RESUMED:
        console.print(
            f"[bold]Resumed[/bold] session [cyan]{event.session_id}[/cyan] "
            f"at phase {event.phase_index}"
        )
    elif kind == EventType.PHASE_STARTED:
        console.print(
            f"\n[cyan]> Phase {(event.phase_index or 0) + 1}/{event.total_phases}:[/cyan] "
            f"{event.phase} [dim]({event.agent_id})[/dim]"
        )
    elif kind == EventType.PRE_PHASE_HOOK:
        hook = event.payload.get("hook")
        if event.payload.get("passed"):
            console.print(f"  [green]hook {hook} passed[/green]")
        else:
            console.print(f"  [red]hook {hook} failed:[/red] {event.error}")
        for warning in event.payload.get("warnings", []):
            console.print(f"  [yellow]warning:[/yellow] {warning}")
    elif kind == EventType.COST_UPDATE:
        console.print(
            f"  [dim]cost {format_cost(event.current_cost_usd or 0.0)}, "
            f"remaining {format_cost(event.budget_remaining_usd or 0.0)}[/dim]"
        )
    elif kind == EventType.PHASE_COMPLETED:
        console.print(f"  [green]Phase complete:[/green] {event.phase}")
    elif kind == EventType.APPROVAL_REQUESTED:
        console.print(f"\n[yellow bold]Approval requested:[/yellow bold] {event.payload.get('summary')}")
    elif kind == EventType.APPROVAL_RECEIVED:
        decision = "approved" if event.payload.get("approved") else "rejected"
        console.print(f"  [bold]{event.phase} {decision}[/bold]")
    elif kind == EventType.WORKFLOW_ERROR:
        tag = "recoverable" if event.recoverable else "fatal"
        console.print(f"[red]Error ({tag}, {event.category}):[/red] {event.error}")
    elif kind == EventType.WORKFLOW_COMPLETED:
        console.print(
            f"\n[green bold]Workflow completed[/green bold] "
            f"total cost {format_cost(event.current_cost_usd or 0.0)}"
        )
