"""Command-line interface for Feature Factory."""

from feature_factory.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
