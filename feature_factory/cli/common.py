"""Common utilities and global state for the CLI.

Contains project directory management, config loading and collaborator
construction. This module should NOT import from the command modules to
avoid circular imports.
"""
from __future__ import annotations

import importlib
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from feature_factory.agents import AgentInvoker
    from feature_factory.checkpoints import CheckpointManager
    from feature_factory.config import FactoryConfig
    from feature_factory.session_store import SessionStore

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config and Collaborators
# ============================================================================


def get_config(config_path: Optional[str] = None) -> "FactoryConfig":
    """
    Load config for the project directory, exiting with an error if invalid.

    A missing default config file is not an error: defaults apply.
    """
    from feature_factory.config import ConfigError, load_config

    working_directory = get_project_dir() or str(Path.cwd())
    try:
        return load_config(config_path, working_directory=working_directory)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def get_store(config: "FactoryConfig") -> "SessionStore":
    """Session store rooted at the configured working directory."""
    from feature_factory.logger import FactoryLogger
    from feature_factory.session_store import SessionStore

    return SessionStore(
        config.working_directory,
        config.state_dir,
        logger=FactoryLogger("cli", config),
    )


def get_checkpoint_manager(config: "FactoryConfig") -> "CheckpointManager":
    """Checkpoint manager for the configured working directory."""
    from feature_factory.checkpoints import CheckpointManager
    from feature_factory.logger import FactoryLogger

    return CheckpointManager(config.working_directory, logger=FactoryLogger("cli", config))


def load_invoker(spec: str) -> "AgentInvoker":
    """
    Load an agent invoker from a ``module:attribute`` reference.

    The attribute may be an invoker instance or a zero-argument factory
    (such as a class) returning one.
    """
    from feature_factory.agents import AgentInvoker

    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter(f"Expected module:attribute, got '{spec}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise typer.BadParameter(f"Cannot import {module_name}: {e}")

    target = getattr(module, attr, None)
    if target is None:
        raise typer.BadParameter(f"{module_name} has no attribute '{attr}'")

    # A class passes the protocol check too, so classes are always instantiated
    if isinstance(target, type) or (callable(target) and not isinstance(target, AgentInvoker)):
        try:
            invoker = target()
        except TypeError as e:
            raise typer.BadParameter(f"Cannot create an agent invoker from {spec}: {e}")
    else:
        invoker = target

    if not isinstance(invoker, AgentInvoker):
        raise typer.BadParameter(f"{spec} does not provide an agent invoker")
    return invoker
