"""Correction attempt history and progress tracking.

Keeps every failed round so the next correction request can see what was
already tried, and detects when the loop is stuck on the same problem so the
request can be escalated with broader context.

This module is headless - no FastAPI or HTTP dependencies.
"""

import hashlib
import logging
import re
from typing import Optional

from forgeloop.core.models import AttemptKind, CorrectionAttempt

logger = logging.getLogger(__name__)

# Summaries longer than this are cut when stored
MAX_SUMMARY_CHARS = 300


def normalize_error(error: str) -> str:
    """Normalize an error summary for comparison.

    Removes variable parts like line/column numbers, directory prefixes,
    memory addresses and long quoted values.
    """
    if not error:
        return ""

    normalized = error.lower()
    normalized = re.sub(r"\bline\s+\d+\b", "line N", normalized)
    normalized = re.sub(r":\d+:\d+", ":N:N", normalized)
    normalized = re.sub(r"\(\d+,\d+\)", "(N,N)", normalized)
    normalized = re.sub(r"(/[^\"':\s]+/)([^\"':\s/]+\.\w+)", r"\2", normalized)
    normalized = re.sub(r"0x[0-9a-f]+", "0xADDR", normalized)
    normalized = re.sub(r'"[^"]{20,}"', '"..."', normalized)
    normalized = re.sub(r"'[^']{20,}'", "'...'", normalized)
    return " ".join(normalized.split())


def hash_error(error: str) -> str:
    """Short signature of a normalized error summary."""
    return hashlib.sha256(normalize_error(error).encode()).hexdigest()[:12]


class AttemptHistory:
    """Ordered record of failed rounds plus a no-progress counter.

    A round makes no progress when it fails on the same file as the previous
    round, when its error count did not drop, or when its normalized error
    summary is identical to the previous one. The counter is 1 for a fresh
    problem and grows while the loop stays stuck.

    Usage:
        history = AttemptHistory()
        history.record(1, AttemptKind.APPLY, "Search string not found", failed_file="a.ts")
        if history.should_escalate(2):
            ...
    """

    def __init__(self):
        self.attempts: list[CorrectionAttempt] = []
        self.no_progress_rounds = 0
        self._last_kind: Optional[AttemptKind] = None
        self._last_failed_file: Optional[str] = None
        self._last_error_count: Optional[int] = None
        self._last_signature: Optional[str] = None

    def __len__(self) -> int:
        return len(self.attempts)

    def record(
        self,
        round: int,
        kind: AttemptKind,
        summary: str,
        failed_file: Optional[str] = None,
        error_count: Optional[int] = None,
    ) -> CorrectionAttempt:
        """Record a failed round and update the progress counter.

        Args:
            round: Round number (0 is the initial apply)
            kind: Why the round failed
            summary: Short description of the failure
            failed_file: File whose edit could not be applied (apply failures)
            error_count: Number of residual errors (validation/test failures)

        Returns:
            The recorded CorrectionAttempt
        """
        summary = summary.strip()
        if len(summary) > MAX_SUMMARY_CHARS:
            summary = summary[:MAX_SUMMARY_CHARS - 3] + "..."

        signature = hash_error(summary)
        stuck = False
        if self._last_kind == kind:
            if failed_file and failed_file == self._last_failed_file:
                stuck = True
            elif (
                error_count is not None
                and self._last_error_count is not None
                and error_count >= self._last_error_count
            ):
                stuck = True
            elif signature == self._last_signature:
                stuck = True

        self.no_progress_rounds = self.no_progress_rounds + 1 if stuck else 1
        self._last_kind = kind
        self._last_failed_file = failed_file
        self._last_error_count = error_count
        self._last_signature = signature

        attempt = CorrectionAttempt(round=round, error_type=kind, error_summary=summary)
        self.attempts.append(attempt)

        if stuck:
            logger.debug(f"No progress for {self.no_progress_rounds} consecutive rounds ({kind.value})")
        return attempt

    def reset_progress(self) -> None:
        """Forget the stuck counter (e.g. after a clean apply)."""
        self.no_progress_rounds = 0
        self._last_kind = None
        self._last_failed_file = None
        self._last_error_count = None
        self._last_signature = None

    def should_escalate(self, threshold: int) -> bool:
        return self.no_progress_rounds >= threshold

    def last(self) -> Optional[CorrectionAttempt]:
        return self.attempts[-1] if self.attempts else None

    def format_history(self) -> str:
        """One line per attempt, oldest first."""
        return "\n".join(a.format() for a in self.attempts)
