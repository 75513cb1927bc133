"""Shared CLI helper utilities.

This module provides common utilities used across CLI commands:
- console: Shared Rich Console instance
- configure_logging: stdlib logging setup from LoopSettings
- load_changes / load_edit_sets / load_errors: JSON file readers for command arguments

Usage:
    from forgeloop.cli.helpers import console, load_changes
"""

import json
import logging
from pathlib import Path
from typing import Any

import typer
from pydantic import ValidationError
from rich.console import Console

from forgeloop.core.config import LoopSettings
from forgeloop.core.models import FileChange, StructuredError

# Shared console instance for all CLI modules
console = Console()

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def load_settings(**overrides: Any) -> LoopSettings:
    """Build LoopSettings from the environment, exiting on invalid values.

    Raises:
        typer.Exit: If a FORGELOOP_* variable fails validation (exit code 1)
    """
    try:
        return LoopSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1)


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging from FORGELOOP_LOG_LEVEL; --verbose forces DEBUG."""
    level = "DEBUG" if verbose else load_settings().log_level
    logging.basicConfig(
        level=getattr(logging, level),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger().setLevel(getattr(logging, level))


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/red] Cannot read {path}: {e}")
        raise typer.Exit(1)


def load_changes(path: Path) -> list[FileChange]:
    """Read an edit set: an object with a ``files`` array, or a bare array.

    Raises:
        typer.Exit: If the file is unreadable or an entry is malformed
    """
    data = _read_json(path)
    entries = data.get("files") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        console.print(f"[red]Error:[/red] {path} must contain a list of file changes")
        raise typer.Exit(1)
    try:
        return [FileChange.from_dict(entry) for entry in entries]
    except (KeyError, TypeError, ValueError) as e:
        console.print(f"[red]Error:[/red] Malformed file change in {path}: {e}")
        raise typer.Exit(1)


def load_edit_sets(path: Path) -> list[list[FileChange]]:
    """Read recorded corrections: a JSON array of edit sets, oldest first.

    Each edit set has the same shape ``load_changes`` accepts.
    """
    data = _read_json(path)
    if not isinstance(data, list):
        console.print(f"[red]Error:[/red] {path} must contain a list of edit sets")
        raise typer.Exit(1)

    edit_sets = []
    for entry in data:
        entries = entry.get("files") if isinstance(entry, dict) else entry
        if not isinstance(entries, list):
            console.print(f"[red]Error:[/red] Every edit set in {path} must be a list of file changes")
            raise typer.Exit(1)
        try:
            edit_sets.append([FileChange.from_dict(e) for e in entries])
        except (KeyError, TypeError, ValueError) as e:
            console.print(f"[red]Error:[/red] Malformed file change in {path}: {e}")
            raise typer.Exit(1)
    return edit_sets


def load_errors(path: Path) -> list[StructuredError]:
    """Read structured errors: an object with an ``errors`` array, or a bare array."""
    data = _read_json(path)
    entries = data.get("errors") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        console.print(f"[red]Error:[/red] {path} must contain a list of errors")
        raise typer.Exit(1)
    try:
        return [StructuredError.from_dict(entry) for entry in entries]
    except (KeyError, TypeError, ValueError) as e:
        console.print(f"[red]Error:[/red] Malformed error entry in {path}: {e}")
        raise typer.Exit(1)


def status_color(status: str) -> str:
    return {
        "SUCCESS": "green",
        "PARTIAL_SUCCESS": "yellow",
        "ROUNDS_EXHAUSTED": "red",
        "FATAL": "red",
        "CANCELLED": "yellow",
    }.get(status, "white")
