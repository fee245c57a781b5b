"""Workflow commands.

Commands for listing workflows and driving a run interactively: events are
rendered as they arrive and approval gates prompt on the terminal.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import typer
from rich.table import Table

from feature_factory.cli.common import get_config, get_console, load_invoker
from feature_factory.cli.display import format_status, render_event

if TYPE_CHECKING:
    from feature_factory.orchestrator import Orchestrator, WorkflowRun

console = get_console()


def list_workflows() -> None:
    """
    List the available workflows and their phases.
    """
    from feature_factory.workflows import BUILTIN_WORKFLOWS

    table = Table(title="Workflows")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description")
    table.add_column("Phases")

    for workflow in BUILTIN_WORKFLOWS.values():
        phases = []
        for phase in workflow.phases:
            label = phase.agent_id
            if phase.requires_approval:
                label += "*"
            phases.append(label)
        table.add_row(workflow.name, workflow.description, " > ".join(phases))

    console.print(table)
    console.print("[dim]* requires approval[/dim]")


def _drive(orchestrator: "Orchestrator", run: "WorkflowRun", auto_approve: bool) -> None:
    """Render events and answer approval prompts until the run stops."""
    while True:
        for event in run:
            render_event(console, event)

        if run.awaiting_approval:
            if auto_approve or typer.confirm("Approve and continue?", default=True):
                feedback = None if auto_approve else (
                    typer.prompt("Feedback for the next phase (blank for none)", default="") or None
                )
                orchestrator.approve(run.session_id, feedback)
                continue
            reason = typer.prompt("Reason for rejection")
            orchestrator.reject(run.session_id, reason)
            continue

        if run.awaiting_retry:
            if typer.confirm("Retry the failed phase?", default=True):
                orchestrator.retry(run.session_id)
                continue
            orchestrator.cancel(run.session_id)

        break

    console.print(f"\nSession [cyan]{run.session_id}[/cyan]: {format_status(run.status)}")
    if run.status.value == "failed":
        raise typer.Exit(1)


def _build_orchestrator(invoker_spec: str, config_path: Optional[str]) -> "Orchestrator":
    from feature_factory.orchestrator import Orchestrator

    config = get_config(config_path)
    return Orchestrator(load_invoker(invoker_spec), config)


def run_workflow(
    workflow: str = typer.Argument(..., help="Workflow to run (see 'workflows')."),
    task: str = typer.Argument(..., help="Task description."),
    invoker: str = typer.Option(
        ...,
        "--invoker",
        "-i",
        help="Agent invoker as module:attribute.",
    ),
    allow_retry: bool = typer.Option(
        False,
        "--allow-retry",
        help="Hold on recoverable errors and offer a retry.",
    ),
    auto_approve: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Approve every gate without prompting.",
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Config file."),
) -> None:
    """
    Run a workflow.

    Examples:
        feature-factory run new-feature "Add SMS opt-out" --invoker my_agents:Invoker
    """
    from feature_factory.errors import WorkflowError
    from feature_factory.orchestrator import RunOptions

    orchestrator = _build_orchestrator(invoker, config_path)
    try:
        run = orchestrator.run_workflow(workflow, task, RunOptions(allow_retry=allow_retry))
    except WorkflowError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _drive(orchestrator, run, auto_approve)


def resume_workflow(
    session_id: str = typer.Argument(..., help="Session to resume."),
    invoker: str = typer.Option(
        ...,
        "--invoker",
        "-i",
        help="Agent invoker as module:attribute.",
    ),
    allow_retry: bool = typer.Option(
        False,
        "--allow-retry",
        help="Hold on recoverable errors and offer a retry.",
    ),
    auto_approve: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Approve every gate without prompting.",
    ),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Config file."),
) -> None:
    """
    Resume a persisted session.
    """
    from feature_factory.errors import WorkflowError, WorkflowStateError
    from feature_factory.orchestrator import RunOptions

    orchestrator = _build_orchestrator(invoker, config_path)
    try:
        run = orchestrator.resume(session_id, RunOptions(allow_retry=allow_retry))
    except (WorkflowError, WorkflowStateError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    _drive(orchestrator, run, auto_approve)
