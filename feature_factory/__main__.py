"""
Entry point for running feature_factory as a module.

Allows running as: python -m feature_factory
"""

from feature_factory.cli import cli_main

if __name__ == "__main__":
    cli_main()
