"""Heuristic code review for files changed by the loop.

Line-level pattern checks, no model calls. Only CRITICAL findings block a
task; warnings and info findings are reported but never trigger a review
correction round.

This module is headless - no FastAPI or HTTP dependencies.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from forgeloop.core.exceptions import PathViolationError
from forgeloop.core.patcher import resolve_workspace_path

logger = logging.getLogger(__name__)


class ReviewSeverity(str, Enum):
    """Severity of a review finding."""

    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


@dataclass
class ReviewFinding:
    """Individual review finding."""

    severity: ReviewSeverity
    rule: str
    file: str
    message: str
    line: Optional[int] = None

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line else self.file


@dataclass
class ReviewResult:
    """Result of reviewing a set of files."""

    findings: list[ReviewFinding] = field(default_factory=list)

    @property
    def critical_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == ReviewSeverity.CRITICAL)

    @property
    def warning_count(self) -> int:
        return sum(1 for f in self.findings if f.severity == ReviewSeverity.WARNING)

    @property
    def passed(self) -> bool:
        return self.critical_count == 0

    @property
    def critical_findings(self) -> list[ReviewFinding]:
        return [f for f in self.findings if f.severity == ReviewSeverity.CRITICAL]


class Reviewer(ABC):
    """Anything that can review changed files."""

    @abstractmethod
    def review(self, workspace_root: Path, changed_files: list[str]) -> ReviewResult:
        """Review *changed_files* (workspace-relative) and return findings."""


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

SECRET_PATTERNS = [
    re.compile(r"(?:api[_-]?key|apikey)\s*[:=]\s*[\"'][^\"']{8,}", re.IGNORECASE),
    re.compile(r"(?:secret|password|passwd|pwd)\s*[:=]\s*[\"'][^\"']{4,}", re.IGNORECASE),
    re.compile(r"(?:token|bearer)\s*[:=]\s*[\"'][^\"']{10,}", re.IGNORECASE),
    re.compile(r"(?:aws_access_key_id|aws_secret_access_key)\s*[:=]\s*[\"'][^\"']+", re.IGNORECASE),
    re.compile(r"-----BEGIN (?:RSA |EC )?PRIVATE KEY-----"),
]

ANY_TYPE_PATTERN = re.compile(r":\s*any\b(?!\w)")
OR_ASSIGNMENT_PATTERN = re.compile(r"(?<!\|\|)\s*\|\|\s*(?!.*(?:&&|console\.|logger\.))")
CONSOLE_LOG_PATTERN = re.compile(r"\bconsole\.(log|warn|error|info|debug)\s*\(")
HARDCODED_URL_PATTERN = re.compile(r"['\"`]https?://[^'\"`\s]+['\"`]")
FUNCTION_PARAMS_PATTERN = re.compile(
    r"(?:function\s+\w+|(?:const|let|var)\s+\w+\s*=\s*(?:async\s+)?)\s*\(([^)]*)\)"
)
FLOATING_CALL_PATTERN = re.compile(r"^\w+\.\w+\(")
ASYNC_HINT_PATTERN = re.compile(
    r"(?:async|promise|fetch|save|create|update|delete|send|post|get|put|patch)", re.IGNORECASE
)
TEST_FILE_PATTERN = re.compile(r"\.(test|spec|e2e)\.[jt]sx?$")

MAX_FUNCTION_PARAMS = 5
MAX_FILE_LINES = 800

SKIPPED_EXTENSIONS = frozenset({
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".svg",
    ".woff", ".woff2", ".ttf", ".eot",
    ".zip", ".tar", ".gz",
    ".lock",
})
TYPED_EXTENSIONS = (".ts", ".tsx")
SCRIPT_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx")
CONFIG_EXTENSIONS = (".md", ".json", ".yaml", ".yml")


def should_skip_file(file_path: str) -> bool:
    name = Path(file_path).name.lower()
    return Path(name).suffix in SKIPPED_EXTENSIONS or name.endswith(("-lock.yaml", "-lock.json"))


def is_test_file(file_path: str) -> bool:
    return bool(TEST_FILE_PATTERN.search(file_path)) or any(
        marker in file_path for marker in ("__test__", "__tests__", "__e2e__")
    )


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_secrets(lines: list[str], file_path: str) -> list[ReviewFinding]:
    findings = []
    for i, line in enumerate(lines):
        if any(p.search(line) for p in SECRET_PATTERNS):
            findings.append(ReviewFinding(
                severity=ReviewSeverity.CRITICAL,
                rule="no-secrets",
                file=file_path,
                line=i + 1,
                message="Possible secret or credential detected in source code",
            ))
    return findings


def check_any_type(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if not file_path.endswith(TYPED_EXTENSIONS):
        return []
    return [
        ReviewFinding(
            severity=ReviewSeverity.WARNING,
            rule="no-any-type",
            file=file_path,
            line=i + 1,
            message="Usage of `any` type; define a proper type instead",
        )
        for i, line in enumerate(lines)
        if ANY_TYPE_PATTERN.search(line)
    ]


def check_or_assignment(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if not file_path.endswith(TYPED_EXTENSIONS):
        return []
    return [
        ReviewFinding(
            severity=ReviewSeverity.WARNING,
            rule="prefer-nullish-coalescing",
            file=file_path,
            line=i + 1,
            message="Use `??` instead of `||` for nullish coalescing",
        )
        for i, line in enumerate(lines)
        if OR_ASSIGNMENT_PATTERN.search(line) and re.search(r"=.*\|\|", line)
    ]


def check_file_length(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if len(lines) <= MAX_FILE_LINES:
        return []
    return [ReviewFinding(
        severity=ReviewSeverity.WARNING,
        rule="max-file-lines",
        file=file_path,
        message=f"File has {len(lines)} lines (max {MAX_FILE_LINES}); consider splitting",
    )]


def check_console_log(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if is_test_file(file_path) or not file_path.endswith(SCRIPT_EXTENSIONS):
        return []
    return [
        ReviewFinding(
            severity=ReviewSeverity.WARNING,
            rule="no-console-log",
            file=file_path,
            line=i + 1,
            message="Use a structured logger instead of console methods in production code",
        )
        for i, line in enumerate(lines)
        if CONSOLE_LOG_PATTERN.search(line)
    ]


def check_hardcoded_url(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if is_test_file(file_path) or file_path.endswith(CONFIG_EXTENSIONS):
        return []
    if "config" in file_path or ".env" in file_path:
        return []
    findings = []
    for i, line in enumerate(lines):
        stripped = line.lstrip()
        if stripped.startswith("//") or stripped.startswith("*"):
            continue
        if HARDCODED_URL_PATTERN.search(line):
            findings.append(ReviewFinding(
                severity=ReviewSeverity.WARNING,
                rule="no-hardcoded-url",
                file=file_path,
                line=i + 1,
                message="Hardcoded URL detected; use environment variables or configuration",
            ))
    return findings


def check_floating_promise(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if not file_path.endswith(TYPED_EXTENSIONS):
        return []
    findings = []
    for i, raw in enumerate(lines):
        line = raw.strip()
        if not FLOATING_CALL_PATTERN.match(line) or not line.endswith(";"):
            continue
        if line.startswith(("await ", "return ", "const ", "let ", "var ")):
            continue
        if ".then(" in line or ".catch(" in line:
            continue
        if ASYNC_HINT_PATTERN.search(line):
            findings.append(ReviewFinding(
                severity=ReviewSeverity.WARNING,
                rule="no-floating-promise",
                file=file_path,
                line=i + 1,
                message="Possible floating promise; add `await`, `.then()`, or `.catch()`",
            ))
    return findings


def check_function_params(lines: list[str], file_path: str) -> list[ReviewFinding]:
    if not file_path.endswith(TYPED_EXTENSIONS):
        return []
    findings = []
    for i, line in enumerate(lines):
        match = FUNCTION_PARAMS_PATTERN.search(line)
        if not match or not match.group(1):
            continue
        params = [p for p in match.group(1).split(",") if p.strip()]
        if len(params) > MAX_FUNCTION_PARAMS:
            findings.append(ReviewFinding(
                severity=ReviewSeverity.INFO,
                rule="max-function-params",
                file=file_path,
                line=i + 1,
                message=(
                    f"Function has {len(params)} parameters (max {MAX_FUNCTION_PARAMS}); "
                    "consider using an options object"
                ),
            ))
    return findings


CHECKS: list[Callable[[list[str], str], list[ReviewFinding]]] = [
    check_secrets,
    check_any_type,
    check_or_assignment,
    check_file_length,
    check_console_log,
    check_hardcoded_url,
    check_floating_promise,
    check_function_params,
]


class HeuristicReviewer(Reviewer):
    """Runs every check in CHECKS over each changed file."""

    def review(self, workspace_root: Path, changed_files: list[str]) -> ReviewResult:
        result = ReviewResult()
        root = Path(workspace_root)

        for file_path in changed_files:
            if should_skip_file(file_path):
                continue
            try:
                full_path = resolve_workspace_path(root, file_path)
                content = full_path.read_text(encoding="utf-8")
            except (PathViolationError, OSError, UnicodeDecodeError) as e:
                logger.debug(f"Skipping review of {file_path}: {e}")
                continue

            lines = content.split("\n")
            for check in CHECKS:
                result.findings.extend(check(lines, file_path))

        logger.info(
            f"Heuristic review: passed={result.passed}, critical={result.critical_count}, "
            f"warnings={result.warning_count}, files={len(changed_files)}"
        )
        return result


def format_for_correction(result: ReviewResult) -> str:
    """Render CRITICAL findings as instructions for a correction request."""
    critical = result.critical_findings
    if not critical:
        return ""

    lines = [
        "CRITICAL CODE REVIEW FINDINGS - these must be fixed before the task can be completed:",
        "",
    ]
    for finding in critical:
        lines.append(f"- [{finding.rule}] {finding.location}: {finding.message}")
    return "\n".join(lines)
