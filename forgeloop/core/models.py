"""Data model shared by the patch applier, error parser, auto-fixer and loop.

All objects here live for at most one task/workspace pairing.

This module is headless - no FastAPI or HTTP dependencies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from forgeloop.core.exceptions import InvalidChangeError


class FileAction(str, Enum):
    """What to do with a file."""

    CREATE = "create"
    MODIFY = "modify"


class Severity(str, Enum):
    """Diagnostic severity."""

    ERROR = "error"
    WARNING = "warning"


class ErrorSource(str, Enum):
    """Which kind of tool produced a diagnostic."""

    TYPE_CHECKER = "type-checker"
    LINTER = "linter"
    BUILD = "build"


class AttemptKind(str, Enum):
    """Why a correction round was needed."""

    APPLY = "apply"
    VALIDATION = "validation"
    TEST = "test"
    REVIEW = "review"


class ExecutionStatus(str, Enum):
    """Final outcome of a correction loop run.

    Uses str mixin for easy JSON serialization.
    """

    SUCCESS = "SUCCESS"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"
    ROUNDS_EXHAUSTED = "ROUNDS_EXHAUSTED"
    FATAL = "FATAL"
    CANCELLED = "CANCELLED"


@dataclass
class Edit:
    """A single edit inside a modify action.

    Either a line range (``line``..``end_line``, 1-based inclusive) or a
    literal ``search`` string. When both are given the line range is tried
    first and ``search`` is the fallback.
    """

    replace: str
    search: str = ""
    line: Optional[int] = None
    end_line: Optional[int] = None

    @property
    def has_line_range(self) -> bool:
        return self.line is not None and self.end_line is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"search": self.search, "replace": self.replace}
        if self.has_line_range:
            data["line"] = self.line
            data["endLine"] = self.end_line
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Edit":
        end_line = data.get("end_line", data.get("endLine"))
        return cls(
            search=data.get("search") or "",
            replace=data.get("replace", ""),
            line=data.get("line"),
            end_line=end_line,
        )


@dataclass
class FileChange:
    """A proposed change to one workspace file.

    Attributes:
        path: Workspace-relative path
        action: create or modify
        content: Full text (required for create, optional for modify)
        edits: Ordered edits for an incremental modify
    """

    path: str
    action: FileAction
    content: str = ""
    edits: list[Edit] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.action, FileAction):
            self.action = FileAction(self.action)

    @property
    def uses_edits(self) -> bool:
        return self.action == FileAction.MODIFY and len(self.edits) > 0

    def validate(self) -> None:
        """Check the create/modify invariants.

        Raises:
            InvalidChangeError: If the change cannot be applied as described
        """
        if not self.path or not self.path.strip():
            raise InvalidChangeError(self.path, "empty path")
        if self.action == FileAction.MODIFY and not self.edits and not self.content:
            raise InvalidChangeError(self.path, "modify requires edits or full content")
        if self.action == FileAction.CREATE and self.edits and not self.content:
            raise InvalidChangeError(self.path, "create requires full content, not edits")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path, "action": self.action.value}
        if self.edits:
            data["edits"] = [e.to_dict() for e in self.edits]
        else:
            data["content"] = self.content
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileChange":
        return cls(
            path=data["path"],
            action=FileAction(data["action"]),
            content=data.get("content") or "",
            edits=[Edit.from_dict(e) for e in data.get("edits") or []],
        )


@dataclass
class ApplyResult:
    """Outcome of applying a batch of FileChanges.

    Attributes:
        success: Whether every change was applied
        applied_files: Paths written (atomic: all or none; sequential: the written prefix)
        failed_file: Path whose change failed
        failed_edit_index: 0-based index of the failing edit in that file
        error: Diagnostic message, including a file snippet for search failures
        match_kinds: How each applied edit was located (exact, line-range, ...)
    """

    success: bool
    applied_files: list[str] = field(default_factory=list)
    failed_file: Optional[str] = None
    failed_edit_index: Optional[int] = None
    error: Optional[str] = None
    match_kinds: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StructuredError:
    """A diagnostic normalized across tools."""

    file: str
    line: int
    column: int
    severity: Severity
    code: str
    message: str
    source: ErrorSource

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def format(self) -> str:
        """One-line rendering used in error reports."""
        tag = f"[{self.source.value.upper()}]"
        level = "ERROR" if self.is_error else "WARN"
        return f"{tag} {level} {self.file}:{self.line}:{self.column} - {self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StructuredError":
        return cls(
            file=data["file"],
            line=int(data.get("line", 0)),
            column=int(data.get("column", 0)),
            severity=Severity(data.get("severity", "error")),
            code=data.get("code", ""),
            message=data.get("message", ""),
            source=ErrorSource(data.get("source", "build")),
        )


@dataclass
class CorrectionAttempt:
    """One failed round, kept so the next request never repeats a strategy blindly."""

    round: int
    error_type: AttemptKind
    error_summary: str

    def format(self) -> str:
        return f"Round {self.round} [{self.error_type.value}]: {self.error_summary}"
