"""Deterministic fixes for a whitelist of diagnostics.

Fixes common errors without requiring LLM calls:
- unused imports/variables (no-unused-vars, TS6133) → strip or prefix with ``_``
- type-only imports (TS1484) → ``import type { ... }``
- missing semicolons (semi) → append ``;``

Everything else passes through untouched. Running the fixer again on its own
remaining errors changes nothing.

This module is headless - no FastAPI or HTTP dependencies.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from forgeloop.core.exceptions import PathViolationError
from forgeloop.core.models import StructuredError
from forgeloop.core.patcher import resolve_workspace_path

logger = logging.getLogger(__name__)


class FixType(str, Enum):
    """Category of deterministic fix."""

    REMOVE_UNUSED = "remove_unused"
    IMPORT_TYPE = "import_type"
    ADD_TERMINATOR = "add_terminator"


# Diagnostic code -> fix family
FIXABLE_CODES: dict[str, FixType] = {
    "no-unused-vars": FixType.REMOVE_UNUSED,
    "@typescript-eslint/no-unused-vars": FixType.REMOVE_UNUSED,
    "TS6133": FixType.REMOVE_UNUSED,
    "TS1484": FixType.IMPORT_TYPE,
    "semi": FixType.ADD_TERMINATOR,
    "@typescript-eslint/semi": FixType.ADD_TERMINATOR,
}

_UNUSED_NAME_PATTERN = re.compile(r"'(\w+)' is (?:defined|declared|assigned)")
_QUOTED_NAME_PATTERN = re.compile(r"'(\w+)'")
_IMPORT_LINE_PATTERN = re.compile(r"^\s*import[\s{]")
_NAMED_CLAUSE_PATTERN = re.compile(r"\{([^}]*)\}")
_DEFAULT_WITH_NAMED_PATTERN = re.compile(r"^import\s+\w+\s*,")
_PLAIN_NAMED_IMPORT_PATTERN = re.compile(r"^(\s*)import\s+\{")
_BLOCK_TERMINATORS = (";", "{", "}")


@dataclass
class AutoFixResult:
    """Result of an auto-fix pass.

    Attributes:
        fixed_count: Number of individual fixes applied
        fixed_files: Workspace-relative paths that were rewritten
        remaining_errors: Errors the pass did not resolve
    """

    fixed_count: int = 0
    fixed_files: list[str] = field(default_factory=list)
    remaining_errors: list[StructuredError] = field(default_factory=list)


@dataclass
class ContentFix:
    """Result of fixing one file's text."""

    content: str
    fixed_count: int = 0
    # original 0-based line index -> new 0-based index (None if removed)
    line_map: Optional[dict[int, Optional[int]]] = None


def is_fixable(error: StructuredError) -> bool:
    return error.code in FIXABLE_CODES


def _remap(line: int, line_map: Optional[dict[int, Optional[int]]]) -> Optional[int]:
    """Translate a 1-based line number across a previous fix."""
    if line_map is None:
        return line
    new_idx = line_map.get(line - 1)
    return None if new_idx is None else new_idx + 1


# ---------------------------------------------------------------------------
# Unused imports and variables
# ---------------------------------------------------------------------------


def extract_unused_names(errors: list[StructuredError]) -> set[str]:
    names = set()
    for err in errors:
        match = _UNUSED_NAME_PATTERN.search(err.message)
        if match:
            names.add(match.group(1))
    return names


def clean_import_statement(block: str, unused: set[str]) -> Optional[str]:
    """Remove unused names from an import's ``{...}`` clause.

    Returns:
        The rewritten block, the unchanged block, or None if the whole
        statement should be dropped
    """
    named = _NAMED_CLAUSE_PATTERN.search(block)
    if not named:
        return block

    specifiers = [s.strip() for s in named.group(1).split(",") if s.strip()]

    def local_name(spec: str) -> str:
        if " as " in spec:
            return spec.split(" as ")[1].strip()
        return spec.replace("type ", "", 1).strip()

    remaining = [s for s in specifiers if local_name(s) not in unused]
    if len(remaining) == len(specifiers):
        return block

    if not remaining:
        if _DEFAULT_WITH_NAMED_PATTERN.match(block.strip()):
            return re.sub(r",\s*\{[^}]*\}", "", block, count=1)
        return None

    if len(remaining) <= 2:
        clause = "{ " + ", ".join(remaining) + " }"
    else:
        clause = "{\n  " + ",\n  ".join(remaining) + "\n}"
    return _NAMED_CLAUSE_PATTERN.sub(lambda _m: clause, block, count=1)


def _prefix_unused_declaration(
    line: str, line_number: int, unused: set[str], errors: list[StructuredError]
) -> Optional[str]:
    for err in errors:
        if err.line != line_number:
            continue
        match = _QUOTED_NAME_PATTERN.search(err.message)
        if not match:
            continue
        name = match.group(1)
        if name not in unused or name.startswith("_"):
            continue
        if re.search(rf"\b(const|let|var)\s+{re.escape(name)}\b", line):
            return re.sub(rf"\b{re.escape(name)}\b", f"_{name}", line, count=1)
    return None


def fix_unused_names(content: str, errors: list[StructuredError]) -> ContentFix:
    """Strip unused import specifiers and prefix unused local declarations."""
    unused = extract_unused_names(errors)
    if not unused:
        return ContentFix(content)

    lines = content.split("\n")
    result: list[str] = []
    line_map: dict[int, Optional[int]] = {}
    fixed = 0
    i = 0

    while i < len(lines):
        line = lines[i]

        if not _IMPORT_LINE_PATTERN.match(line):
            prefixed = _prefix_unused_declaration(line, i + 1, unused, errors)
            line_map[i] = len(result)
            if prefixed is None:
                result.append(line)
            else:
                result.append(prefixed)
                fixed += 1
            i += 1
            continue

        block = line
        end = i
        while block.count("{") > block.count("}") and end < len(lines) - 1:
            end += 1
            block += "\n" + lines[end]

        cleaned = clean_import_statement(block, unused)
        if cleaned == block:
            for k in range(i, end + 1):
                line_map[k] = len(result) + (k - i)
            result.extend(lines[i:end + 1])
        elif cleaned is None:
            for k in range(i, end + 1):
                line_map[k] = None
            fixed += 1
        else:
            line_map[i] = len(result)
            for k in range(i + 1, end + 1):
                line_map[k] = None
            result.extend(cleaned.split("\n"))
            fixed += 1

        i = end + 1

    return ContentFix("\n".join(result), fixed, line_map)


# ---------------------------------------------------------------------------
# Type-only imports
# ---------------------------------------------------------------------------


def convert_to_import_type(line: str) -> Optional[str]:
    """``import { A }`` → ``import type { A }``, or None if not applicable."""
    if not _PLAIN_NAMED_IMPORT_PATTERN.match(line):
        return None
    if "import type" in line:
        return None
    named = _NAMED_CLAUSE_PATTERN.search(line)
    if named:
        specs = [s.strip() for s in named.group(1).split(",") if s.strip()]
        if specs and all(s.startswith("type ") for s in specs):
            return None
    return _PLAIN_NAMED_IMPORT_PATTERN.sub(r"\1import type {", line, count=1)


def fix_import_type(
    content: str, errors: list[StructuredError], line_map: Optional[dict[int, Optional[int]]] = None
) -> ContentFix:
    lines = content.split("\n")
    fixed = 0
    targets = {_remap(e.line, line_map) for e in errors}
    for line_number in sorted(t for t in targets if t is not None):
        idx = line_number - 1
        if not 0 <= idx < len(lines):
            continue
        converted = convert_to_import_type(lines[idx])
        if converted is None:
            continue
        lines[idx] = converted
        fixed += 1
    return ContentFix("\n".join(lines), fixed)


# ---------------------------------------------------------------------------
# Statement terminators
# ---------------------------------------------------------------------------


def fix_missing_terminators(
    content: str, errors: list[StructuredError], line_map: Optional[dict[int, Optional[int]]] = None
) -> ContentFix:
    lines = content.split("\n")
    fixed = 0
    targets = {_remap(e.line, line_map) for e in errors}
    for line_number in sorted(t for t in targets if t is not None):
        idx = line_number - 1
        if not 0 <= idx < len(lines):
            continue
        stripped = lines[idx].rstrip()
        if not stripped or stripped.endswith(_BLOCK_TERMINATORS):
            continue
        lines[idx] = stripped + ";"
        fixed += 1
    return ContentFix("\n".join(lines), fixed)


def apply_fixes_to_content(content: str, errors: list[StructuredError]) -> ContentFix:
    """Run every applicable fix family over one file's text, in order."""
    by_type: dict[FixType, list[StructuredError]] = {t: [] for t in FixType}
    for err in errors:
        fix_type = FIXABLE_CODES.get(err.code)
        if fix_type is not None:
            by_type[fix_type].append(err)

    total = 0
    line_map = None

    if by_type[FixType.REMOVE_UNUSED]:
        step = fix_unused_names(content, by_type[FixType.REMOVE_UNUSED])
        content, total, line_map = step.content, total + step.fixed_count, step.line_map

    if by_type[FixType.IMPORT_TYPE]:
        step = fix_import_type(content, by_type[FixType.IMPORT_TYPE], line_map)
        content, total = step.content, total + step.fixed_count

    if by_type[FixType.ADD_TERMINATOR]:
        step = fix_missing_terminators(content, by_type[FixType.ADD_TERMINATOR], line_map)
        content, total = step.content, total + step.fixed_count

    return ContentFix(content, total)


# ---------------------------------------------------------------------------
# AutoFixer
# ---------------------------------------------------------------------------


class AutoFixer:
    """Applies whitelisted fixes to files inside one workspace.

    Never calls a model; safe to run before every correction round.
    """

    def __init__(self, workspace_root: Path | str):
        self.workspace_root = Path(workspace_root)

    def _relative(self, file_path: str) -> str:
        """Linters report absolute paths; map those inside the workspace to relative ones."""
        if not os.path.isabs(file_path):
            return file_path
        try:
            return Path(file_path).resolve().relative_to(self.workspace_root.resolve()).as_posix()
        except ValueError:
            return file_path

    def apply(self, errors: list[StructuredError]) -> AutoFixResult:
        """Fix what can be fixed and return the rest.

        Args:
            errors: Structured diagnostics from the last validation

        Returns:
            AutoFixResult with counts and the errors still outstanding
        """
        by_file: dict[str, list[StructuredError]] = {}
        for err in errors:
            if is_fixable(err):
                by_file.setdefault(err.file, []).append(err)

        result = AutoFixResult()
        fixed_codes: dict[str, set[str]] = {}

        for file_path, file_errors in by_file.items():
            try:
                full_path = resolve_workspace_path(self.workspace_root, self._relative(file_path))
            except PathViolationError as e:
                logger.debug(f"Skipping auto-fix outside workspace: {e}")
                continue

            try:
                content = full_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.debug(f"Could not read {file_path} for auto-fix: {e}")
                continue

            fix = apply_fixes_to_content(content, file_errors)
            if fix.fixed_count == 0 or fix.content == content:
                continue

            try:
                full_path.write_text(fix.content, encoding="utf-8")
            except OSError as e:
                logger.warning(f"Could not write auto-fixed {file_path}: {e}")
                continue

            result.fixed_count += fix.fixed_count
            result.fixed_files.append(file_path)
            fixed_codes[file_path] = {e.code for e in file_errors}
            logger.info(f"Auto-fix applied to {file_path} without LLM ({fix.fixed_count} fixes)")

        result.remaining_errors = [
            err for err in errors
            if err.code not in fixed_codes.get(err.file, set())
        ]
        return result


def apply_auto_fixes(errors: list[StructuredError], workspace_root: Path | str) -> AutoFixResult:
    """Convenience wrapper: ``AutoFixer(workspace_root).apply(errors)``."""
    return AutoFixer(workspace_root).apply(errors)
