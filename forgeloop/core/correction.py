"""Correction requests and the providers that answer them.

A CorrectionRequest bundles everything the next attempt needs: the current
content of touched files, where the last round failed, a budgeted error report,
the attempt history, optional type definitions and escalation snippets. A
CorrectionProvider turns a request into a new edit set (or nothing).

This module is headless - no FastAPI or HTTP dependencies.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from forgeloop.adapters.llm import LLMProvider, Purpose
from forgeloop.core.error_parser import VENDOR_DIRS, is_relevant_file
from forgeloop.core.models import AttemptKind, CorrectionAttempt, FileChange
from forgeloop.core.output_parser import parse_code_output

logger = logging.getLogger(__name__)

ESCALATION_LINES = 80
ESCALATION_SNIPPET_MAX_CHARS = 2000
TYPE_DEFINITION_MAX_CHARS = 1500
MAX_TYPE_NAMES = 5
MAX_DEFINITIONS_PER_TYPE = 2
DEFINITION_PREVIEW_LINES = 3

SEARCHABLE_EXTENSIONS = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".py")
SKIPPED_DIRS = VENDOR_DIRS | {".git", "dist", "build", "coverage", "__pycache__"}


@dataclass
class CorrectionRequest:
    """Everything a provider gets for one correction round.

    Attributes:
        task: Original task description
        round: Round the correction is for (1-based)
        reason: Why the previous round failed
        files: Current content of touched files, keyed by path
        failed_file: File whose edit could not be applied (apply failures)
        failed_edit_index: Index of the failing edit in that file
        error_report: Prioritized, budgeted error text
        attempts: Every failed round so far, oldest first
        type_definitions: Definitions of types named by type errors
        escalation_snippets: Wider file excerpts after repeated failures
        review_findings: CRITICAL review findings to resolve
        previous_changes: The edit set that failed
        workspace_restored: Files were reset to their pre-round state
    """

    task: str
    round: int
    reason: AttemptKind
    files: dict[str, str] = field(default_factory=dict)
    previous_changes: list[FileChange] = field(default_factory=list)
    failed_file: Optional[str] = None
    failed_edit_index: Optional[int] = None
    error_report: str = ""
    attempts: list[CorrectionAttempt] = field(default_factory=list)
    type_definitions: str = ""
    escalation_snippets: str = ""
    review_findings: str = ""
    workspace_restored: bool = True

    @property
    def is_escalated(self) -> bool:
        return bool(self.escalation_snippets)

    def render(self) -> str:
        """Compact text form for a model prompt."""
        parts = [f"Task: {self.task}", f"Correction round: {self.round} (reason: {self.reason.value})"]

        if self.workspace_restored:
            parts.append(
                "The workspace was restored to its state before your previous edits. "
                "Return the COMPLETE edit set again, with every fix applied."
            )
        else:
            parts.append(
                "The files below already contain your validated changes. "
                "Return only the additional edits needed."
            )

        if self.previous_changes:
            parts.append("")
            parts.append("PREVIOUS EDIT SET:")
            parts.append(json.dumps([c.to_dict() for c in self.previous_changes], indent=2))

        if self.files:
            parts.append("")
            if self.workspace_restored and self.reason != AttemptKind.APPLY:
                parts.append("FILE STATE WITH YOUR PREVIOUS EDITS (FAILED VALIDATION):")
            else:
                parts.append("CURRENT FILE STATE:")
            for path, content in self.files.items():
                parts.append(f"--- {path} ---\n{content}\n--- end ---")

        if self.failed_file:
            location = self.failed_file
            if self.failed_edit_index is not None:
                location += f" (edit index {self.failed_edit_index})"
            parts.append("")
            parts.append(f"FAILED EDIT: {location}")

        if self.error_report:
            parts.append("")
            parts.append("ERRORS FROM PREVIOUS ATTEMPT:")
            parts.append(self.error_report)

        if self.review_findings:
            parts.append("")
            parts.append(self.review_findings)

        if self.type_definitions:
            parts.append("")
            parts.append("RELEVANT TYPE DEFINITIONS:")
            parts.append(self.type_definitions)

        if self.escalation_snippets:
            parts.append("")
            parts.append("REPEATED FAILURE - actual file content (copy search strings from here):")
            parts.append(self.escalation_snippets)

        if self.attempts:
            parts.append("")
            parts.append("PREVIOUS ATTEMPTS (do not repeat a failed strategy):")
            parts.extend(a.format() for a in self.attempts)

        parts.append("")
        parts.append(
            "Rules: 'search' must be copied exactly from the current file state. "
            "Fix only the reported problems. Drop files that do not need changes. "
            "Respond with the JSON object only."
        )
        return "\n".join(parts)


# ---------------------------------------------------------------------------
# Supplementary context
# ---------------------------------------------------------------------------


class TypeContextLookup:
    """Finds definitions of named types inside the workspace.

    Matches ``interface|type|class|enum Name`` declarations (optionally
    exported) and returns short previews, capped at *max_chars* overall.
    """

    def __init__(self, max_chars: int = TYPE_DEFINITION_MAX_CHARS):
        self.max_chars = max_chars

    def _iter_source_files(self, workspace_root: Path) -> Iterable[Path]:
        for dirpath, dirnames, filenames in os.walk(workspace_root):
            dirnames[:] = [d for d in dirnames if d not in SKIPPED_DIRS]
            for name in sorted(filenames):
                if name.endswith(SEARCHABLE_EXTENSIONS):
                    yield Path(dirpath) / name

    def lookup(self, workspace_root: Path, type_names: list[str]) -> str:
        names = type_names[:MAX_TYPE_NAMES]
        if not names:
            return ""

        patterns = {
            name: re.compile(
                rf"^\s*(?:export\s+)?(?:declare\s+)?(?:default\s+)?(?:abstract\s+)?"
                rf"(?:interface|type|class|enum)\s+{re.escape(name)}\b"
            )
            for name in names
        }
        found: dict[str, list[str]] = {name: [] for name in names}
        root = Path(workspace_root)

        for file_path in self._iter_source_files(root):
            if all(len(v) >= MAX_DEFINITIONS_PER_TYPE for v in found.values()):
                break
            try:
                lines = file_path.read_text(encoding="utf-8", errors="replace").split("\n")
            except OSError:
                continue
            rel = file_path.relative_to(root).as_posix()
            for i, line in enumerate(lines):
                for name, pattern in patterns.items():
                    if len(found[name]) >= MAX_DEFINITIONS_PER_TYPE:
                        continue
                    if pattern.match(line):
                        preview = "\n".join(lines[i:i + DEFINITION_PREVIEW_LINES])
                        found[name].append(f"[{rel}] {preview}")

        snippets: list[str] = []
        total = 0
        for name in names:
            for snippet in found[name]:
                if total + len(snippet) > self.max_chars:
                    return "\n".join(snippets)
                snippets.append(snippet)
                total += len(snippet) + 1
        return "\n".join(snippets)


def build_escalation_snippets(
    files: dict[str, str],
    targets: Iterable[str],
    max_chars: int = ESCALATION_SNIPPET_MAX_CHARS,
) -> str:
    """First ESCALATION_LINES lines of each file matching *targets*."""
    target_list = [t for t in targets if t]
    snippets: list[str] = []
    total = 0
    for path, content in files.items():
        if not is_relevant_file(path, target_list):
            continue
        head = "\n".join(content.split("\n")[:ESCALATION_LINES])
        snippet = f"--- {path} (first {ESCALATION_LINES} lines) ---\n{head}\n--- end ---"
        if total + len(snippet) > max_chars:
            remaining = max_chars - total
            if remaining > 200:
                snippets.append(snippet[:remaining])
            break
        snippets.append(snippet)
        total += len(snippet) + 1
    return "\n".join(snippets)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class CorrectionProvider(ABC):
    """Produces a corrected edit set for a failed round."""

    @abstractmethod
    def generate(self, request: CorrectionRequest) -> Optional[list[FileChange]]:
        """Return the next edit set, or None if no usable output was produced."""


CORRECTION_SYSTEM_PROMPT = """You repair code changes that failed to apply or failed validation.

Respond with a single JSON object and nothing else:
{
  "description": "what this change does",
  "risk": 1-5,
  "rollback": "how to undo",
  "files": [
    {"path": "src/a.ts", "action": "modify", "edits": [{"search": "exact existing text", "replace": "new text"}]},
    {"path": "src/b.ts", "action": "create", "content": "full file content"}
  ]
}

Every "search" must be an exact copy of text in the current file state.
Include 2-3 lines of surrounding context so each search is unique."""


class LLMCorrectionProvider(CorrectionProvider):
    """Asks an LLM for the corrected edit set."""

    def __init__(
        self,
        llm: LLMProvider,
        system_prompt: str = CORRECTION_SYSTEM_PROMPT,
        max_tokens: int = 8192,
    ):
        self.llm = llm
        self.system_prompt = system_prompt
        self.max_tokens = max_tokens

    def generate(self, request: CorrectionRequest) -> Optional[list[FileChange]]:
        prompt = request.render()
        response = self.llm.complete(
            messages=[{"role": "user", "content": prompt}],
            purpose=Purpose.CORRECTION,
            max_tokens=self.max_tokens,
            system=self.system_prompt,
        )
        logger.debug(
            f"Correction round {request.round}: {len(prompt)} prompt chars, "
            f"{response.total_tokens} tokens"
        )

        output = parse_code_output(response.content)
        if output is None:
            logger.warning(f"Correction round {request.round} returned unusable output")
            return None
        if not output.files:
            logger.warning(f"Correction round {request.round} returned an empty edit set")
            return None
        return list(output.files)


class ScriptedCorrectionProvider(CorrectionProvider):
    """Returns queued edit sets in order; None once the queue is empty.

    Used for tests and for replaying recorded sessions.
    """

    def __init__(self, edit_sets: Optional[list[Optional[list[FileChange]]]] = None):
        self.edit_sets = list(edit_sets or [])
        self.requests: list[CorrectionRequest] = []

    def add(self, edit_set: Optional[list[FileChange]]) -> None:
        self.edit_sets.append(edit_set)

    def generate(self, request: CorrectionRequest) -> Optional[list[FileChange]]:
        self.requests.append(request)
        if not self.edit_sets:
            return None
        return self.edit_sets.pop(0)
