"""Turn raw tool output into StructuredError lists and budgeted reports.

Three textual shapes are recognized:
  - type-checker:  ``src/a.ts(10,5): error TS2339: Property 'x' does not exist``
  - linter:        a file header line followed by indented
                   ``  10:5  error  'x' is defined but never used  no-unused-vars`` rows
  - build:         ``src/a.ts:10:5: message`` (vendor directories ignored)

This module is headless - no FastAPI or HTTP dependencies.
"""

import re
from typing import TYPE_CHECKING, Iterable, Union

from forgeloop.core.models import ErrorSource, Severity, StructuredError

if TYPE_CHECKING:
    from forgeloop.core.validation import ValidationReport


_TYPE_CHECKER_PATTERN = re.compile(
    r"^(.+?)\((\d+),(\d+)\):\s+(error|warning)\s+([A-Z]+\d+):\s+(.+)$"
)
_LINTER_FILE_PATTERN = re.compile(r"^/.*\.\w+$|^[a-zA-Z].*\.\w+$")
_LINTER_ROW_PATTERN = re.compile(
    r"^\s+(\d+):(\d+)\s+(error|warning)\s+(.+?)\s{2,}(\S+)\s*$"
)
_BUILD_PATTERN = re.compile(r"^(.+?\.[a-zA-Z]{1,5}):(\d+):(\d+)[:\s]+(.+)$")

VENDOR_DIRS = frozenset({"node_modules", "site-packages", ".venv", "vendor"})

# Codes whose messages name the types involved in a mismatch
TYPE_MISMATCH_CODES = frozenset({"TS2345", "TS2322", "TS2741", "TS2559", "TS2304"})
_TYPE_NAME_PATTERN = re.compile(r"(?i:type) '([A-Z]\w+)'")
BUILTIN_TYPE_NAMES = frozenset({
    "String", "Number", "Boolean", "Null", "Undefined",
    "Object", "Array", "Function", "Promise", "Record",
    "Partial", "Required", "Readonly", "Pick", "Omit",
})


def _severity(value: str) -> Severity:
    return Severity.WARNING if value == "warning" else Severity.ERROR


def _is_vendored(file_path: str) -> bool:
    parts = re.split(r"[\\/]", file_path)
    return any(part in VENDOR_DIRS for part in parts)


def parse_type_checker_errors(raw: str) -> list[StructuredError]:
    """Parse single-line type-checker diagnostics.

    Args:
        raw: Raw stdout/stderr

    Returns:
        List of StructuredError tagged ``type-checker``
    """
    errors = []
    for line in raw.splitlines():
        match = _TYPE_CHECKER_PATTERN.match(line.strip())
        if not match:
            continue
        errors.append(StructuredError(
            file=match.group(1).strip(),
            line=int(match.group(2)),
            column=int(match.group(3)),
            severity=_severity(match.group(4)),
            code=match.group(5),
            message=match.group(6).strip(),
            source=ErrorSource.TYPE_CHECKER,
        ))
    return errors


def parse_linter_errors(raw: str) -> list[StructuredError]:
    """Parse per-file grouped linter diagnostics.

    A header line naming a file (no spaces, has an extension) sets the
    current file; indented rows below it are diagnostics for that file.
    """
    errors = []
    current_file = ""

    for line in raw.splitlines():
        stripped = line.strip()
        if " " not in stripped and _LINTER_FILE_PATTERN.match(stripped):
            current_file = stripped
            continue

        match = _LINTER_ROW_PATTERN.match(line)
        if match and current_file:
            errors.append(StructuredError(
                file=current_file,
                line=int(match.group(1)),
                column=int(match.group(2)),
                severity=_severity(match.group(3)),
                message=match.group(4).strip(),
                code=match.group(5),
                source=ErrorSource.LINTER,
            ))
    return errors


def parse_build_errors(raw: str) -> list[StructuredError]:
    """Parse generic build-tool output.

    Type-checker shaped lines win when present (re-tagged as ``build``);
    otherwise ``file:line:col: message`` lines outside vendor directories.
    """
    typed = parse_type_checker_errors(raw)
    if typed:
        return [
            StructuredError(
                file=e.file, line=e.line, column=e.column, severity=e.severity,
                code=e.code, message=e.message, source=ErrorSource.BUILD,
            )
            for e in typed
        ]

    errors = []
    for line in raw.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        match = _BUILD_PATTERN.match(stripped)
        if not match:
            continue
        file_path = match.group(1)
        if _is_vendored(file_path):
            continue
        errors.append(StructuredError(
            file=file_path,
            line=int(match.group(2)),
            column=int(match.group(3)),
            severity=Severity.ERROR,
            code="BUILD",
            message=match.group(4).strip(),
            source=ErrorSource.BUILD,
        ))
    return errors


_PARSERS = {
    ErrorSource.TYPE_CHECKER: parse_type_checker_errors,
    ErrorSource.LINTER: parse_linter_errors,
    ErrorSource.BUILD: parse_build_errors,
}


def parse(raw: str, source_kind: Union[ErrorSource, str]) -> list[StructuredError]:
    """Parse *raw* output of the given kind.

    Raises:
        ValueError: If *source_kind* is not a known ErrorSource
    """
    kind = ErrorSource(source_kind)
    if not raw:
        return []
    return _PARSERS[kind](raw)


def combine(*groups: Iterable[StructuredError]) -> list[StructuredError]:
    """Concatenate diagnostic lists, dropping exact duplicates."""
    seen: set[StructuredError] = set()
    combined = []
    for group in groups:
        for err in group:
            if err in seen:
                continue
            seen.add(err)
            combined.append(err)
    return combined


def separate(errors: Iterable[StructuredError]) -> tuple[list[StructuredError], list[StructuredError]]:
    """Split into (errors, warnings)."""
    errs, warns = [], []
    for err in errors:
        (errs if err.is_error else warns).append(err)
    return errs, warns


def _normalize(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def is_relevant_file(error_file: str, touched_files: Iterable[str]) -> bool:
    """True if *error_file* names one of the touched files (suffix match either way)."""
    error_file = _normalize(error_file)
    for touched in touched_files:
        touched = _normalize(touched)
        if not touched:
            continue
        if error_file.endswith(touched) or touched.endswith(error_file):
            return True
    return False


def sort_by_priority(
    errors: Iterable[StructuredError], touched_files: Iterable[str]
) -> list[StructuredError]:
    """Touched-file diagnostics first, then errors before warnings; stable otherwise."""
    touched = list(touched_files)
    return sorted(
        errors,
        key=lambda e: (0 if is_relevant_file(e.file, touched) else 1, 0 if e.is_error else 1),
    )


def prioritize(
    errors: Iterable[StructuredError], touched_files: Iterable[str], max_chars: int
) -> str:
    """Serialize the most relevant diagnostics into a newline report.

    Entries are added greedily in priority order until the next one would
    push the report past *max_chars*.
    """
    lines: list[str] = []
    total = 0
    for err in sort_by_priority(errors, touched_files):
        formatted = err.format()
        if total + len(formatted) > max_chars:
            break
        lines.append(formatted)
        total += len(formatted) + 1
    return "\n".join(lines)


def extract_type_names(errors: Iterable[StructuredError]) -> list[str]:
    """Type names mentioned by type-mismatch diagnostics, for definition lookups."""
    names: list[str] = []
    for err in errors:
        if err.code not in TYPE_MISMATCH_CODES:
            continue
        for name in _TYPE_NAME_PATTERN.findall(err.message):
            if len(name) >= 3 and name not in BUILTIN_TYPE_NAMES and name not in names:
                names.append(name)
    return names


def parse_validation_report(report: "ValidationReport") -> list[StructuredError]:
    """Structure the output of every failed step of a validation run."""
    from forgeloop.core.validation import ValidationStep

    groups = []
    for step in report.failed_steps:
        if step.step == ValidationStep.LINT:
            groups.append(parse_linter_errors(step.output))
        elif step.step == ValidationStep.BUILD:
            groups.append(parse_type_checker_errors(step.output) or parse_build_errors(step.output))
        elif step.step == ValidationStep.TEST:
            groups.append(parse_build_errors(step.output))
    return combine(*groups)
