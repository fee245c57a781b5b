"""Checkpoint commands.

Commands for listing, restoring and deleting the git tags taken before
each phase.
"""
from __future__ import annotations

import typer

from feature_factory.cli.common import get_checkpoint_manager, get_config, get_console

app = typer.Typer(
    name="checkpoints",
    help="Manage phase checkpoints (git tags)",
    no_args_is_help=True,
)

console = get_console()


@app.command("list")
def list_checkpoints(
    session_id: str = typer.Argument(..., help="Session whose checkpoints to list."),
) -> None:
    """
    List checkpoint tags for a session.
    """
    manager = get_checkpoint_manager(get_config())
    tags = manager.list_checkpoints(session_id)
    if not tags:
        console.print(f"[dim]No checkpoints for session {session_id}.[/dim]")
        return
    for tag in tags:
        typer.echo(tag)


@app.command("rollback")
def rollback(
    tag_name: str = typer.Argument(..., help="Checkpoint tag to restore."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """
    Restore the working tree to a checkpoint.

    Discards later commits, local edits to tracked files and untracked
    files. Ignored files are kept.
    """
    if not yes:
        typer.confirm(
            f"Reset the working tree to {tag_name}? Uncommitted work will be lost",
            abort=True,
        )

    manager = get_checkpoint_manager(get_config())
    result = manager.rollback_to_checkpoint(tag_name)
    if not result.success:
        console.print(f"[red]Rollback failed:[/red] {result.error}")
        raise typer.Exit(1)
    console.print(f"[green]Rolled back to[/green] {tag_name}")


@app.command("cleanup")
def cleanup(
    session_id: str = typer.Argument(..., help="Session whose checkpoints to delete."),
) -> None:
    """
    Delete every checkpoint tag of a session.
    """
    manager = get_checkpoint_manager(get_config())
    deleted = manager.cleanup_checkpoints(session_id)
    if deleted:
        console.print(f"[green]Deleted {len(deleted)} checkpoint(s).[/green]")
    else:
        console.print("[dim]No checkpoints to delete.[/dim]")
