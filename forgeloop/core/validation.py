"""Validation collaborator: run install/lint/build/test against a workspace.

The correction loop only needs the Validator contract. CommandValidator is the
default implementation; it shells out to the workspace's own toolchain with a
timeout per step and reports raw output for the error parser.

This module is headless - no FastAPI or HTTP dependencies.
"""

import json
import logging
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from forgeloop.core.exceptions import StepTimeoutError

logger = logging.getLogger(__name__)


class ValidationStep(str, Enum):
    """Validation steps, in execution order."""

    INSTALL = "install"
    LINT = "lint"
    BUILD = "build"
    TEST = "test"


class StepStatus(str, Enum):
    """Outcome of a single step."""

    OK = "ok"
    FAIL = "fail"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


@dataclass
class StepResult:
    """Result of one validation step."""

    step: ValidationStep
    status: StepStatus
    output: str = ""
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status in (StepStatus.FAIL, StepStatus.TIMEOUT)


@dataclass
class ValidationReport:
    """Aggregate of every step run for one validation pass."""

    steps: list[StepResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.failed_steps

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.failed]

    @property
    def error_output(self) -> str:
        """Raw output of the failed steps, each prefixed with its step name."""
        return "\n".join(
            f"[{s.step.value}] {s.output}".rstrip() for s in self.failed_steps
        )

    def get_step(self, step: ValidationStep) -> Optional[StepResult]:
        for result in self.steps:
            if result.step == step:
                return result
        return None


class Validator(ABC):
    """Abstract validation collaborator."""

    @abstractmethod
    def validate(
        self,
        workspace_root: Path,
        changed_files: list[str],
        timeout: Optional[float] = None,
    ) -> ValidationReport:
        """Validate the workspace after a round's changes.

        Args:
            workspace_root: Workspace directory
            changed_files: Workspace-relative paths touched this round
            timeout: Optional per-step cap in seconds

        Returns:
            ValidationReport (never raises for a failing step)
        """


# ---------------------------------------------------------------------------
# Command detection
# ---------------------------------------------------------------------------

LINTABLE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

DEFAULT_TIMEOUTS: dict[ValidationStep, float] = {
    ValidationStep.INSTALL: 300,
    ValidationStep.LINT: 60,
    ValidationStep.BUILD: 120,
    ValidationStep.TEST: 300,
}

# Linter output that means the linter itself is misconfigured, not the code
LINTER_CONFIG_ERROR_PATTERNS = (
    "Oops! Something went wrong!",
    "Error while loading rule",
    "You have used a rule which requires",
    "Error: Failed to load",
    "Cannot read config file",
    "ESLintrc configuration is no longer supported",
)


def strip_npm_warnings(text: str) -> str:
    """Drop ``npm warn`` / ``npm WARN`` lines."""
    lines = [
        line for line in text.split("\n")
        if not line.startswith("npm warn") and not line.startswith("npm WARN")
    ]
    return "\n".join(lines).strip()


def detect_package_manager(workspace_root: Path) -> str:
    """Pick the package manager from the lockfile present."""
    if (workspace_root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (workspace_root / "yarn.lock").exists():
        return "yarn"
    return "npm"


def _package_scripts(workspace_root: Path) -> dict[str, str]:
    package_json = workspace_root / "package.json"
    if not package_json.exists():
        return {}
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.debug(f"Could not read package.json: {e}")
        return {}
    scripts = data.get("scripts") or {}
    return scripts if isinstance(scripts, dict) else {}


def detect_commands(
    workspace_root: Path, changed_files: list[str]
) -> dict[ValidationStep, Optional[list[str]]]:
    """Work out which command (if any) each step should run.

    None means the step does not apply to this workspace.
    """
    commands: dict[ValidationStep, Optional[list[str]]] = {step: None for step in ValidationStep}
    if not (workspace_root / "package.json").exists():
        return commands

    pm = detect_package_manager(workspace_root)
    scripts = _package_scripts(workspace_root)

    if not (workspace_root / "node_modules").exists():
        commands[ValidationStep.INSTALL] = [pm, "install"]

    lintable = [f for f in changed_files if f.endswith(LINTABLE_EXTENSIONS)]
    if lintable:
        commands[ValidationStep.LINT] = ["npx", "eslint", *lintable, "--no-error-on-unmatched-pattern"]

    if (workspace_root / "tsconfig.json").exists():
        if "type-check" in scripts:
            commands[ValidationStep.BUILD] = [pm, "run", "type-check"]
        else:
            commands[ValidationStep.BUILD] = ["npx", "tsc", "--noEmit"]
    elif "build" in scripts:
        commands[ValidationStep.BUILD] = [pm, "run", "build"]

    if "test" in scripts:
        commands[ValidationStep.TEST] = [pm, "run", "test"]

    return commands


# ---------------------------------------------------------------------------
# CommandValidator
# ---------------------------------------------------------------------------


class CommandValidator(Validator):
    """Runs the workspace toolchain as blocking subprocesses.

    Args:
        command_overrides: Step -> shell-style command string; replaces detection
        timeouts: Step -> seconds; merged over DEFAULT_TIMEOUTS
    """

    def __init__(
        self,
        command_overrides: Optional[dict[ValidationStep, str]] = None,
        timeouts: Optional[dict[ValidationStep, float]] = None,
    ):
        self.command_overrides = dict(command_overrides or {})
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}

    def validate(
        self,
        workspace_root: Path,
        changed_files: list[str],
        timeout: Optional[float] = None,
    ) -> ValidationReport:
        workspace_root = Path(workspace_root)
        commands = detect_commands(workspace_root, changed_files)
        for step, command in self.command_overrides.items():
            commands[ValidationStep(step)] = shlex.split(command) if command else None

        report = ValidationReport()
        for step in ValidationStep:
            install = report.get_step(ValidationStep.INSTALL)
            if install is not None and install.failed:
                report.steps.append(StepResult(step, StepStatus.SKIPPED, "install failed"))
                continue
            # tests only run on a clean lint + build
            if step == ValidationStep.TEST and report.failed_steps:
                report.steps.append(StepResult(step, StepStatus.SKIPPED, "earlier step failed"))
                continue

            command = commands.get(step)
            if not command:
                report.steps.append(StepResult(step, StepStatus.SKIPPED, "not configured"))
                continue

            step_timeout = self.timeouts[step]
            if timeout is not None:
                step_timeout = min(step_timeout, timeout)

            result = self._run_step(step, command, workspace_root, step_timeout)
            logger.debug(f"Validation step {step.value}: {result.status.value} ({result.duration_ms}ms)")
            report.steps.append(result)

        if report.passed:
            logger.info("Validation passed")
        else:
            failed = ", ".join(s.step.value for s in report.failed_steps)
            logger.info(f"Validation failed: {failed}")
        return report

    def _run_step(
        self, step: ValidationStep, command: list[str], cwd: Path, timeout: float
    ) -> StepResult:
        if not shutil.which(command[0]):
            return StepResult(step, StepStatus.SKIPPED, f"{command[0]} not found")

        start = time.time()
        try:
            try:
                result = subprocess.run(
                    command,
                    cwd=cwd,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired as e:
                raise StepTimeoutError(step.value, timeout) from e
        except StepTimeoutError as e:
            duration_ms = int((time.time() - start) * 1000)
            logger.warning(str(e))
            return StepResult(step, StepStatus.TIMEOUT, str(e), duration_ms)
        except OSError as e:
            return StepResult(step, StepStatus.FAIL, str(e), int((time.time() - start) * 1000))

        duration_ms = int((time.time() - start) * 1000)

        output = result.stdout or ""
        if result.stderr:
            output += "\n" + result.stderr
        output = strip_npm_warnings(output)

        if result.returncode == 0:
            return StepResult(step, StepStatus.OK, output, duration_ms)

        if step == ValidationStep.LINT:
            if not output:
                return StepResult(step, StepStatus.OK, "OK (warnings only)", duration_ms)
            if any(p in output for p in LINTER_CONFIG_ERROR_PATTERNS):
                logger.warning("Linter configuration error; skipping lint step")
                return StepResult(step, StepStatus.SKIPPED, output, duration_ms)

        return StepResult(step, StepStatus.FAIL, output, duration_ms)
