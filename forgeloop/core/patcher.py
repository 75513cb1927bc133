"""Batch patch applier with exact and fuzzy edit resolution.

Resolution order per edit (first match wins):
  1. Line range (1-based inclusive); out of range falls through
  2. Exact literal substring, first occurrence
  3. Fuzzy fallback, only when exact fails:
     a. all non-blank trimmed search lines against a contiguous run of trimmed file lines
     b. a single trimmed-line match
     c. a substring match of the trimmed search anywhere in the file

Batches are applied atomically (buffer everything, flush only when every file
resolves) or sequentially (write as each file resolves, report the prefix).

This module is headless - no FastAPI or HTTP dependencies.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath

from rapidfuzz import fuzz

from forgeloop.core.exceptions import ApplyFailure, PathViolationError
from forgeloop.core.models import ApplyResult, Edit, FileChange

logger = logging.getLogger(__name__)

MAX_SNIPPET_CHARS = 1500
MIN_KEYWORD_SCORE = 2
SNIPPET_LINES_BEFORE = 5
SNIPPET_LINES_AFTER = 15
HEAD_SNIPPET_LINES = 40


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class LocatedMatch:
    start: int
    end: int
    kind: str


@dataclass
class _PendingWrite:
    rel_path: str
    full_path: Path
    content: str
    original: str | None


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------


def resolve_workspace_path(workspace_root: Path, rel_path: str) -> Path:
    """Resolve *rel_path* inside *workspace_root*.

    Raises:
        PathViolationError: If the path is absolute or escapes the root
    """
    if not rel_path or not rel_path.strip():
        raise PathViolationError(rel_path, "Empty path not allowed")

    if os.path.isabs(rel_path) or PureWindowsPath(rel_path).drive:
        raise PathViolationError(rel_path, "Absolute path not allowed")

    normalized = os.path.normpath(rel_path)
    if normalized == ".." or normalized.startswith(".." + os.sep) or normalized.startswith("../"):
        raise PathViolationError(rel_path, "Path traversal detected")

    root = workspace_root.resolve()
    resolved = (root / normalized).resolve()
    try:
        resolved.relative_to(root)
    except ValueError:
        raise PathViolationError(rel_path, "Path escapes workspace")
    return resolved


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _count_occurrences(content: str, search: str) -> int:
    """Count (possibly overlapping) occurrences of *search* in *content*."""
    if not search:
        return 0
    count = 0
    pos = 0
    while True:
        idx = content.find(search, pos)
        if idx == -1:
            break
        count += 1
        pos = idx + 1
    return count


def _line_offset(lines: list[str], line_index: int) -> int:
    """Character offset of *line_index* in content split on ``\\n``."""
    return sum(len(lines[k]) + 1 for k in range(line_index))


def _keywords(text: str) -> list[str]:
    first_line = text.split("\n")[0].strip().lower()
    return [w for w in first_line.split() if len(w) > 2]


# ---------------------------------------------------------------------------
# PatchApplier
# ---------------------------------------------------------------------------


class PatchApplier:
    """Apply FileChange batches to one workspace root.

    The applier holds no state between calls beyond the root, so one instance
    per workspace is enough. It does not lock the workspace; callers must make
    sure only one loop writes to a workspace at a time.
    """

    def __init__(self, workspace_root: Path | str) -> None:
        self.workspace_root = Path(workspace_root)

    # -- public API --------------------------------------------------------

    def apply(self, files: list[FileChange], atomic: bool = True) -> ApplyResult:
        """Apply a batch of changes.

        Raises:
            PathViolationError: If any path is unsafe (nothing is written)
            InvalidChangeError: If any change violates the create/modify invariant
        """
        targets = self._validate_batch(files)
        if atomic:
            return self._apply_atomic(files, targets)
        return self._apply_sequential(files, targets)

    def apply_edits_to_content(
        self, content: str, edits: list[Edit], file_path: str
    ) -> tuple[str, list[str]]:
        """Resolve *edits* against *content* in order.

        Returns:
            Tuple of (new_content, match_kinds)

        Raises:
            ApplyFailure: On the first edit that cannot be located
        """
        kinds: list[str] = []
        for idx, edit in enumerate(edits):
            result = self._apply_one_edit(content, edit, file_path)
            if result is None:
                raise ApplyFailure(
                    self._describe_failure(file_path, idx, len(edits), edit, content),
                    file_path=file_path,
                    edit_index=idx,
                )
            content, kind = result
            kinds.append(kind)
        return content, kinds

    # -- batch modes -------------------------------------------------------

    def _validate_batch(self, files: list[FileChange]) -> list[Path]:
        targets = []
        for change in files:
            change.validate()
            targets.append(resolve_workspace_path(self.workspace_root, change.path))
        return targets

    def _apply_atomic(self, files: list[FileChange], targets: list[Path]) -> ApplyResult:
        pending: dict[Path, _PendingWrite] = {}
        applied: list[str] = []
        kinds: list[str] = []

        for change, full_path in zip(files, targets):
            existing = pending.get(full_path)
            try:
                original = existing.original if existing else self._read_optional(full_path, change.path)
                current = existing.content if existing else original
                new_content, change_kinds = self._resolve_change(change, current)
            except ApplyFailure as e:
                logger.warning(
                    f"Atomic apply aborted at {e.file_path} (edit {e.edit_index}); workspace untouched"
                )
                return ApplyResult(
                    success=False,
                    applied_files=[],
                    failed_file=e.file_path,
                    failed_edit_index=e.edit_index,
                    error=str(e),
                )

            pending[full_path] = _PendingWrite(change.path, full_path, new_content, original)
            if change.path not in applied:
                applied.append(change.path)
            kinds.extend(change_kinds)

        flushed: list[_PendingWrite] = []
        try:
            for write in pending.values():
                self._write(write.full_path, write.content)
                flushed.append(write)
        except OSError as e:
            logger.error(f"Disk write failed during atomic flush: {e}")
            self._rollback_flushed(flushed)
            return ApplyResult(
                success=False,
                applied_files=[],
                failed_file=write.rel_path,
                error=f"Disk write failed: {e}",
            )

        logger.info(f"Applied {len(applied)} file(s) atomically")
        return ApplyResult(success=True, applied_files=applied, match_kinds=kinds)

    def _apply_sequential(self, files: list[FileChange], targets: list[Path]) -> ApplyResult:
        applied: list[str] = []
        kinds: list[str] = []

        for change, full_path in zip(files, targets):
            try:
                current = self._read_optional(full_path, change.path)
                new_content, change_kinds = self._resolve_change(change, current)
                self._write(full_path, new_content)
            except ApplyFailure as e:
                logger.warning(
                    f"Sequential apply stopped at {e.file_path} (edit {e.edit_index}); "
                    f"{len(applied)} file(s) already written"
                )
                return ApplyResult(
                    success=False,
                    applied_files=applied,
                    failed_file=e.file_path,
                    failed_edit_index=e.edit_index,
                    error=str(e),
                )
            except OSError as e:
                return ApplyResult(
                    success=False,
                    applied_files=applied,
                    failed_file=change.path,
                    error=f"Disk write failed: {e}",
                )

            if change.path not in applied:
                applied.append(change.path)
            kinds.extend(change_kinds)

        logger.info(f"Applied {len(applied)} file(s) sequentially")
        return ApplyResult(success=True, applied_files=applied, match_kinds=kinds)

    def _resolve_change(self, change: FileChange, current: str | None) -> tuple[str, list[str]]:
        if not change.uses_edits:
            return change.content, ["full-content"]

        if current is None:
            raise ApplyFailure(
                f"File not found for modify: {change.path}",
                file_path=change.path,
                edit_index=0,
            )
        return self.apply_edits_to_content(current, change.edits, change.path)

    # -- edit resolution ---------------------------------------------------

    def _apply_one_edit(self, content: str, edit: Edit, file_path: str) -> tuple[str, str] | None:
        if edit.has_line_range:
            replaced = self._apply_line_range(content, edit.line, edit.end_line, edit.replace)
            if replaced is not None:
                logger.debug(f"{file_path}: edit applied via lines {edit.line}-{edit.end_line}")
                return replaced, "line-range"

        if not edit.search:
            return None

        match = self._find_match(content, edit.search, file_path)
        if match is None:
            logger.warning(f"{file_path}: search string not found: {edit.search[:150]!r}")
            return None

        if match.kind != "exact":
            logger.debug(f"{file_path}: edit matched with fuzzy fallback ({match.kind})")
        return content[: match.start] + edit.replace + content[match.end :], match.kind

    @staticmethod
    def _apply_line_range(content: str, start_line: int, end_line: int, replace: str) -> str | None:
        lines = content.split("\n")
        zero_start = start_line - 1
        zero_end = end_line - 1
        if zero_start < 0 or zero_end >= len(lines) or zero_start > zero_end:
            logger.debug(
                f"Line-based edit out of range: {start_line}-{end_line} (file has {len(lines)} lines)"
            )
            return None
        return "\n".join(lines[:zero_start] + replace.split("\n") + lines[zero_end + 1 :])

    def _find_match(self, content: str, search: str, file_path: str) -> LocatedMatch | None:
        occurrences = _count_occurrences(content, search)
        if occurrences > 1:
            logger.warning(
                f"{file_path}: {occurrences} matches for search string, applying to first occurrence"
            )

        idx = content.find(search)
        if idx != -1:
            return LocatedMatch(idx, idx + len(search), "exact")

        return self._fuzzy_match(content, search)

    def _fuzzy_match(self, content: str, search: str) -> LocatedMatch | None:
        content_lines = content.split("\n")
        search_lines = [line.strip() for line in search.split("\n") if line.strip()]
        if not search_lines:
            return None

        if len(search_lines) > 1:
            return self._match_trimmed_lines(content_lines, search_lines)

        return self._match_single_trimmed_line(content_lines, search_lines[0]) or self._match_substring(
            content, search_lines[0]
        )

    @staticmethod
    def _match_trimmed_lines(content_lines: list[str], search_lines: list[str]) -> LocatedMatch | None:
        n = len(search_lines)
        for i in range(len(content_lines) - n + 1):
            if all(content_lines[i + j].strip() == search_lines[j] for j in range(n)):
                start = _line_offset(content_lines, i)
                end = start + sum(len(content_lines[i + k]) + 1 for k in range(n)) - 1
                return LocatedMatch(start, end, "trimmed-lines")
        return None

    @staticmethod
    def _match_single_trimmed_line(content_lines: list[str], trimmed: str) -> LocatedMatch | None:
        for i, line in enumerate(content_lines):
            if line.strip() == trimmed:
                start = _line_offset(content_lines, i)
                return LocatedMatch(start, start + len(line), "single-line-trim")
        return None

    @staticmethod
    def _match_substring(content: str, trimmed: str) -> LocatedMatch | None:
        idx = content.find(trimmed)
        if idx == -1:
            return None
        return LocatedMatch(idx, idx + len(trimmed), "substring")

    # -- error context -----------------------------------------------------

    def _describe_failure(
        self, file_path: str, edit_index: int, total_edits: int, edit: Edit, content: str
    ) -> str:
        position = f"(edit {edit_index + 1} of {total_edits})"
        if edit.search:
            header = f'Search string not found in {file_path} {position}: "{edit.search[:100]}..."'
        else:
            header = (
                f"Line range {edit.line}-{edit.end_line} out of range in {file_path} {position}; "
                f"file has {len(content.split(chr(10)))} lines"
            )
        return header + "\n" + build_file_snippet(content, edit.search)

    # -- disk --------------------------------------------------------------

    @staticmethod
    def _read_optional(full_path: Path, rel_path: str) -> str | None:
        """Read a file for patching; None if it does not exist.

        Raises:
            ApplyFailure: If the file cannot be read or is not valid UTF-8
        """
        if not full_path.is_file():
            return None
        try:
            return full_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ApplyFailure(f"Cannot decode {rel_path} as UTF-8: {e}", file_path=rel_path) from e
        except OSError as e:
            raise ApplyFailure(f"Cannot read {rel_path}: {e}", file_path=rel_path) from e

    @staticmethod
    def _write(full_path: Path, content: str) -> None:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")

    @staticmethod
    def _rollback_flushed(flushed: list[_PendingWrite]) -> None:
        for write in reversed(flushed):
            try:
                if write.original is None:
                    write.full_path.unlink(missing_ok=True)
                else:
                    write.full_path.write_text(write.original, encoding="utf-8")
            except OSError as e:
                logger.error(f"Could not roll back {write.rel_path} after failed flush: {e}")


def build_file_snippet(content: str, failed_search: str) -> str:
    """Show the file region most likely meant by a failed search.

    Picks the line sharing the most keywords with the first search line
    (ties broken by fuzzy similarity), falling back to the head of the file.
    """
    lines = content.split("\n")
    words = _keywords(failed_search) if failed_search else []
    needle = failed_search.split("\n")[0].strip().lower() if failed_search else ""

    best_idx = -1
    best_score = (0, 0.0)
    for i, line in enumerate(lines):
        lowered = line.strip().lower()
        if not lowered:
            continue
        hits = sum(1 for w in words if w in lowered)
        if hits == 0:
            continue
        score = (hits, fuzz.partial_ratio(needle, lowered))
        if score > best_score:
            best_score = score
            best_idx = i

    if best_idx >= 0 and best_score[0] >= MIN_KEYWORD_SCORE:
        start = max(0, best_idx - SNIPPET_LINES_BEFORE)
        end = min(len(lines), best_idx + SNIPPET_LINES_AFTER)
        body = "\n".join(f"{start + k + 1}| {line}" for k, line in enumerate(lines[start:end]))
        return f"Relevant excerpt (lines {start + 1}-{end}):\n{body[:MAX_SNIPPET_CHARS]}"

    head = lines[:HEAD_SNIPPET_LINES]
    body = "\n".join(f"{k + 1}| {line}" for k, line in enumerate(head))
    return f"Start of file (first {len(head)} lines):\n{body[:MAX_SNIPPET_CHARS]}"


def apply_changes(
    files: list[FileChange], workspace_root: Path | str, atomic: bool = True
) -> ApplyResult:
    """Convenience wrapper: ``PatchApplier(workspace_root).apply(files, atomic)``."""
    return PatchApplier(workspace_root).apply(files, atomic=atomic)
