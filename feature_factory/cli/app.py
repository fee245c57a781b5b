"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback, and
sub-app registrations are all defined here.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from feature_factory import __version__
from feature_factory.cli.common import get_console, set_project_dir

app = typer.Typer(
    name="feature-factory",
    help="Phase-by-phase workflow orchestration for agent-driven development",
    add_completion=False,
)

console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"feature-factory version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Feature Factory - workflow orchestration for agent-driven development.

    Use --project/-p to operate on a different project directory.
    """
    set_project_dir(None)
    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Command Registration
# =========================================================================

from feature_factory.cli.workflow import list_workflows, resume_workflow, run_workflow  # noqa: E402

app.command("workflows")(list_workflows)
app.command("run")(run_workflow)
app.command("resume")(resume_workflow)

from feature_factory.cli.sessions import app as sessions_app  # noqa: E402

app.add_typer(sessions_app, name="sessions")

from feature_factory.cli.checkpoints import app as checkpoints_app  # noqa: E402

app.add_typer(checkpoints_app, name="checkpoints")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
