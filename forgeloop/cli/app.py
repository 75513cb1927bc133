"""forgeloop CLI - headless access to the correction engine.

All commands call core modules directly; nothing needs a server.

Examples:
    forgeloop apply changes.json --workspace ./repo
    forgeloop parse tsc.log --source type-checker --touched src/a.ts
    forgeloop autofix errors.json --workspace ./repo
    forgeloop review src/a.ts src/b.ts --workspace ./repo
    forgeloop run changes.json --workspace ./repo --task "Add a greeting"
"""

import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.table import Table

from forgeloop.cli.helpers import (
    configure_logging,
    console,
    load_changes,
    load_edit_sets,
    load_errors,
    load_settings,
    status_color,
)
from forgeloop.core import error_parser
from forgeloop.core.config import load_environment
from forgeloop.core.exceptions import InvalidChangeError, PathViolationError
from forgeloop.core.models import ErrorSource, ExecutionStatus

app = typer.Typer(
    name="forgeloop",
    help="Apply proposed code edits and correct them until validation passes",
    add_completion=False,
    no_args_is_help=True,
)

WORKSPACE_OPTION = typer.Option(
    Path("."),
    "--workspace", "-w",
    help="Workspace root directory",
    exists=True,
    file_okay=False,
    dir_okay=True,
    resolve_path=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """forgeloop: bounded apply, validate and correct loop."""
    load_environment()
    configure_logging(verbose)


# =============================================================================
# apply
# =============================================================================


@app.command()
def apply(
    changes_file: Path = typer.Argument(..., help="JSON edit set", exists=True, dir_okay=False),
    workspace: Path = WORKSPACE_OPTION,
    sequential: bool = typer.Option(
        False, "--sequential", help="Write files as they resolve instead of all-or-nothing"
    ),
) -> None:
    """Apply an edit set to the workspace once, without validation.

    Example:

        forgeloop apply changes.json --workspace ./repo
    """
    from forgeloop.core.patcher import PatchApplier

    changes = load_changes(changes_file)
    try:
        result = PatchApplier(workspace).apply(changes, atomic=not sequential)
    except (PathViolationError, InvalidChangeError) as e:
        console.print(f"[red]Rejected:[/red] {e}")
        raise typer.Exit(1)

    if result.success:
        console.print(f"[green]✓[/green] Applied {len(result.applied_files)} file(s)")
        for path in result.applied_files:
            console.print(f"  {path}")
        return

    console.print(f"[red]✗ Apply failed[/red] in {result.failed_file} (edit {result.failed_edit_index})")
    if result.applied_files:
        console.print(f"[yellow]Already written:[/yellow] {', '.join(result.applied_files)}")
    console.print(result.error or "", markup=False)
    raise typer.Exit(1)


# =============================================================================
# parse
# =============================================================================


@app.command()
def parse(
    raw_file: Path = typer.Argument(..., help="Raw tool output", exists=True, dir_okay=False),
    source: ErrorSource = typer.Option(ErrorSource.BUILD, "--source", "-s", help="Tool kind"),
    touched: Optional[List[str]] = typer.Option(
        None, "--touched", "-t", help="File touched by the change (repeatable)"
    ),
    max_chars: int = typer.Option(2000, "--max-chars", help="Report budget in characters"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
) -> None:
    """Structure raw type-checker, linter or build output.

    Example:

        forgeloop parse tsc.log --source type-checker --touched src/a.ts
    """
    raw = raw_file.read_text(encoding="utf-8", errors="replace")
    errors = error_parser.parse(raw, source)

    if format == "json":
        typer.echo(json.dumps([e.to_dict() for e in errors], indent=2))
        return

    if not errors:
        console.print("[green]No diagnostics found[/green]")
        return

    hard, warnings = error_parser.separate(errors)
    console.print(f"[bold]{len(hard)} error(s), {len(warnings)} warning(s)[/bold]\n")
    console.print(error_parser.prioritize(errors, touched or [], max_chars), markup=False)


# =============================================================================
# autofix
# =============================================================================


@app.command()
def autofix(
    errors_file: Path = typer.Argument(..., help="JSON list of structured errors", exists=True, dir_okay=False),
    workspace: Path = WORKSPACE_OPTION,
) -> None:
    """Apply deterministic fixes for whitelisted diagnostics.

    Example:

        forgeloop autofix errors.json --workspace ./repo
    """
    from forgeloop.core.auto_fix import AutoFixer

    errors = load_errors(errors_file)
    result = AutoFixer(workspace).apply(errors)

    console.print(f"[bold]Fixed:[/bold] {result.fixed_count}")
    for path in result.fixed_files:
        console.print(f"  [green]✓[/green] {path}")
    console.print(f"[bold]Remaining:[/bold] {len(result.remaining_errors)}")


# =============================================================================
# review
# =============================================================================


@app.command()
def review(
    files: List[str] = typer.Argument(..., help="Workspace-relative files to review"),
    workspace: Path = WORKSPACE_OPTION,
) -> None:
    """Run the heuristic reviewer over files; exits 1 on CRITICAL findings.

    Example:

        forgeloop review src/a.ts src/b.ts --workspace ./repo
    """
    from forgeloop.core.review import HeuristicReviewer

    result = HeuristicReviewer().review(workspace, files)

    if not result.findings:
        console.print("[green]✓ No findings[/green]")
        return

    table = Table(title="Review Findings")
    table.add_column("Severity", no_wrap=True)
    table.add_column("Rule", style="cyan")
    table.add_column("Location")
    table.add_column("Message")
    for finding in result.findings:
        color = {"CRITICAL": "red", "WARNING": "yellow"}.get(finding.severity.value, "white")
        table.add_row(
            f"[{color}]{finding.severity.value}[/{color}]",
            finding.rule,
            finding.location,
            finding.message,
        )
    console.print(table)

    if not result.passed:
        console.print(f"\n[red]{result.critical_count} CRITICAL finding(s)[/red]")
        raise typer.Exit(1)


# =============================================================================
# run
# =============================================================================


@app.command()
def run(
    changes_file: Path = typer.Argument(..., help="Initial JSON edit set", exists=True, dir_okay=False),
    workspace: Path = WORKSPACE_OPTION,
    task: str = typer.Option(..., "--task", help="Task description for correction requests"),
    provider: str = typer.Option("anthropic", "--provider", "-p", help="LLM provider: anthropic or mock"),
    replay: Optional[Path] = typer.Option(
        None, "--replay", help="JSON list of recorded edit sets for --provider mock",
        exists=True, dir_okay=False,
    ),
    max_rounds: Optional[int] = typer.Option(None, "--max-rounds", help="Override FORGELOOP_MAX_ROUNDS"),
    no_review: bool = typer.Option(False, "--no-review", help="Skip the heuristic review"),
    format: str = typer.Option("text", "--format", "-f", help="Output format: text or json"),
) -> None:
    """Apply an edit set and drive the correction loop to a terminal status.

    Exits 0 only on SUCCESS. The mock provider works offline: it answers
    correction requests with the edit sets from --replay, in order, then with
    an empty edit set.

    Example:

        forgeloop run changes.json --workspace ./repo --task "Add a greeting"
        forgeloop run changes.json -p mock --replay fixes.json --task "Add a greeting"
    """
    from forgeloop.adapters.llm import MockProvider, get_provider
    from forgeloop.core.correction import LLMCorrectionProvider
    from forgeloop.core.correction_loop import CorrectionLoop
    from forgeloop.core.review import HeuristicReviewer
    from forgeloop.core.validation import CommandValidator

    settings = load_settings(
        max_rounds=max_rounds,
        enable_review=False if no_review else None,
    )
    changes = load_changes(changes_file)

    try:
        llm = get_provider(provider)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if replay is not None:
        if not isinstance(llm, MockProvider):
            console.print("[red]Error:[/red] --replay requires --provider mock")
            raise typer.Exit(1)
        for edit_set in load_edit_sets(replay):
            llm.add_edit_set(edit_set)

    loop = CorrectionLoop(
        workspace,
        validator=CommandValidator(settings.command_overrides(), settings.step_timeouts()),
        provider=LLMCorrectionProvider(llm),
        reviewer=HeuristicReviewer(),
        settings=settings,
    )
    result = loop.run(task, changes)

    if format == "json":
        typer.echo(json.dumps(result.to_dict(), indent=2))
    else:
        color = status_color(result.status.value)
        console.print(f"\n[bold]Status:[/bold] [{color}]{result.status.value}[/{color}]")
        console.print(f"[bold]Correction rounds:[/bold] {result.rounds_used}")
        if result.review_attempts_used:
            console.print(f"[bold]Review corrections:[/bold] {result.review_attempts_used}")
        if result.changed_files:
            console.print(f"[bold]Changed:[/bold] {', '.join(result.changed_files)}")

        if result.attempts:
            table = Table(title="Failed Rounds")
            table.add_column("Round", style="cyan", no_wrap=True)
            table.add_column("Kind", style="yellow")
            table.add_column("Summary")
            for attempt in result.attempts:
                table.add_row(str(attempt.round), attempt.error_type.value, attempt.error_summary)
            console.print(table)

        if result.error:
            console.print("[red]Error:[/red]", end=" ")
            console.print(result.error, markup=False)
        if result.error_report:
            console.print("\n[bold]Remaining errors:[/bold]")
            console.print(result.error_report, markup=False)

    if result.status != ExecutionStatus.SUCCESS:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
