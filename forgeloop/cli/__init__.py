"""Command-line interface for forgeloop.

The main Typer app is exported for use as the entry point:
    forgeloop = "forgeloop.cli:app"
"""

from forgeloop.cli.app import app

__all__ = ["app"]
