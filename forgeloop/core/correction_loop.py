"""Bounded apply → validate → correct loop.

One CorrectionLoop drives one task against one workspace:

1. EXECUTING applies the current edit set (round 0 is the initial apply)
2. VALIDATING runs the validator, structures its output and tries the
   deterministic auto-fixer before giving up on the round
3. CORRECTING restores the workspace to its pre-task state and asks the
   correction provider for a complete new edit set
4. REVIEW / REVIEW_CORRECTING run a heuristic review over validated changes
   and layer fixes for CRITICAL findings on top

The loop always ends in a terminal state with an explicit ExecutionStatus.

This module is headless - no FastAPI or HTTP dependencies.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from forgeloop.core import error_parser
from forgeloop.core.attempts import AttemptHistory
from forgeloop.core.auto_fix import AutoFixer
from forgeloop.core.config import LoopSettings
from forgeloop.core.correction import (
    CorrectionProvider,
    CorrectionRequest,
    TypeContextLookup,
    build_escalation_snippets,
)
from forgeloop.core.exceptions import (
    FatalEnvironmentError,
    InvalidChangeError,
    PathViolationError,
)
from forgeloop.core.models import (
    ApplyResult,
    AttemptKind,
    CorrectionAttempt,
    ExecutionStatus,
    FileChange,
    StructuredError,
)
from forgeloop.core.patcher import PatchApplier
from forgeloop.core.review import Reviewer, ReviewResult, format_for_correction
from forgeloop.core.states import LoopState, validate_transition
from forgeloop.core.validation import ValidationReport, ValidationStep, Validator
from forgeloop.core.workspace import WorkspaceSnapshot, read_current_files

logger = logging.getLogger(__name__)


@dataclass
class LoopResult:
    """Final outcome of a correction loop run.

    Attributes:
        status: Terminal ExecutionStatus
        rounds_used: Correction requests made (round 0 not counted)
        review_attempts_used: Review correction requests made
        attempts: Every failed round, oldest first
        final_errors: Residual errors when the loop gave up
        error_report: Prioritized text form of final_errors
        changed_files: Files that differ from the pre-task snapshot
        final_changes: Edit sets that produced the final workspace state, in order
        review: Last review result, if a review ran
        error: Human-readable reason for a non-success status
        transitions: Every (from, to) state transition, in order
    """

    status: ExecutionStatus
    rounds_used: int = 0
    review_attempts_used: int = 0
    attempts: list[CorrectionAttempt] = field(default_factory=list)
    final_errors: list[StructuredError] = field(default_factory=list)
    error_report: str = ""
    changed_files: list[str] = field(default_factory=list)
    final_changes: list[FileChange] = field(default_factory=list)
    review: Optional[ReviewResult] = None
    error: Optional[str] = None
    transitions: list[tuple[LoopState, LoopState]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "rounds_used": self.rounds_used,
            "review_attempts_used": self.review_attempts_used,
            "attempts": [
                {"round": a.round, "error_type": a.error_type.value, "error_summary": a.error_summary}
                for a in self.attempts
            ],
            "final_errors": [e.to_dict() for e in self.final_errors],
            "error_report": self.error_report,
            "changed_files": self.changed_files,
            "review": [
                {
                    "severity": f.severity.value,
                    "rule": f.rule,
                    "file": f.file,
                    "line": f.line,
                    "message": f.message,
                }
                for f in self.review.findings
            ] if self.review else None,
            "error": self.error,
        }


def _unique_paths(changes: list[FileChange]) -> list[str]:
    paths: list[str] = []
    for change in changes:
        if change.path not in paths:
            paths.append(change.path)
    return paths


def _error_key(err: StructuredError) -> tuple:
    return (err.file, err.line, err.column, err.code, err.message)


class CorrectionLoop:
    """Explicit state machine that drives a task's edits to a validated state.

    Usage:
        loop = CorrectionLoop(workspace_root, validator, provider)
        result = loop.run("Add a greeting", changes)
        if result.status == ExecutionStatus.SUCCESS:
            ...

    ``cancel()`` may be called from another thread; it is honored between
    rounds only.
    """

    def __init__(
        self,
        workspace_root: Path | str,
        validator: Validator,
        provider: Optional[CorrectionProvider] = None,
        reviewer: Optional[Reviewer] = None,
        settings: Optional[LoopSettings] = None,
        type_lookup: Optional[TypeContextLookup] = None,
    ):
        self.workspace_root = Path(workspace_root)
        self.validator = validator
        self.provider = provider
        self.reviewer = reviewer
        self.settings = settings or LoopSettings()
        self.type_lookup = type_lookup or TypeContextLookup(self.settings.type_definition_max_chars)

        self.applier = PatchApplier(self.workspace_root)
        self.auto_fixer = AutoFixer(self.workspace_root)
        self._cancel_event = threading.Event()
        self._reset("")

    # -- inspection --------------------------------------------------------

    @property
    def attempts(self) -> list[CorrectionAttempt]:
        return self.history.attempts

    @property
    def no_progress_rounds(self) -> int:
        return self.history.no_progress_rounds

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next round starts."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # -- state -------------------------------------------------------------

    def _reset(self, task: str) -> None:
        self.task = task
        self.state = LoopState.EXECUTING
        self.round = 0
        self.review_attempts = 0
        self.history = AttemptHistory()
        self.transitions: list[tuple[LoopState, LoopState]] = []
        self.snapshot: Optional[WorkspaceSnapshot] = None
        self._checkpoint: Optional[WorkspaceSnapshot] = None
        self._in_review = False
        self._current: list[FileChange] = []
        self._validated: list[FileChange] = []
        self._baseline: set[tuple] = set()
        self._last_apply: Optional[ApplyResult] = None
        self._last_errors: list[StructuredError] = []
        self._last_error_report = ""
        self._last_request: Optional[CorrectionRequest] = None
        self._review: Optional[ReviewResult] = None
        self._error: Optional[str] = None

    def _transition(self, target: LoopState) -> None:
        validate_transition(self.state, target)
        logger.debug(f"Loop state {self.state.value} -> {target.value}")
        self.transitions.append((self.state, target))
        self.state = target

    # -- public API --------------------------------------------------------

    def run(self, task: str, changes: list[FileChange]) -> LoopResult:
        """Apply *changes* and correct them until validation passes.

        Args:
            task: Task description passed to correction requests
            changes: Initial edit set

        Returns:
            LoopResult with a terminal status
        """
        self._reset(task)
        self._current = list(changes)
        logger.info(
            f"Correction loop starting: {len(changes)} change(s), "
            f"max {self.settings.max_rounds} correction round(s)"
        )

        try:
            self.snapshot = WorkspaceSnapshot(self.workspace_root)
            if self.settings.take_baseline:
                self._take_baseline(_unique_paths(self._current))

            while not self.state.is_terminal:
                if self.state == LoopState.EXECUTING:
                    self._step_execute()
                elif self.state == LoopState.VALIDATING:
                    self._step_validate()
                elif self.state == LoopState.CORRECTING:
                    self._step_correct()
                elif self.state == LoopState.REVIEW:
                    self._step_review()
                elif self.state == LoopState.REVIEW_CORRECTING:
                    self._step_review_correct()
        except FatalEnvironmentError as e:
            logger.error(f"Correction loop aborted: {e}")
            self._error = str(e)
            self._transition(LoopState.FATAL)
            return self._build_result()

        return self._build_result()

    # -- steps -------------------------------------------------------------

    def _step_execute(self) -> None:
        if self.cancelled:
            logger.info(f"Correction loop cancelled before round {self.round}")
            self._error = "Cancelled"
            self._transition(LoopState.CANCELLED)
            return

        touched = _unique_paths(self._current)
        logger.info(f"Round {self.round}: applying {len(self._current)} change(s)")

        try:
            self.snapshot.capture(touched)
            if self._in_review:
                self._checkpoint.capture(touched)
            result = self.applier.apply(self._current, atomic=self.settings.atomic_edits)
        except (PathViolationError, InvalidChangeError) as e:
            result = ApplyResult(success=False, failed_file=e.path, error=str(e))

        self._last_apply = result
        if result.success:
            self._transition(LoopState.VALIDATING)
            return

        if result.applied_files:
            # sequential mode: undo the written prefix
            target = self._checkpoint if self._in_review else self.snapshot
            target.restore(result.applied_files)

        failed = result.failed_file or "unknown file"
        self.history.record(
            self.round,
            AttemptKind.APPLY,
            f"Edit failed in {failed}: {(result.error or '')[:150]}",
            failed_file=result.failed_file,
        )
        self._last_errors = []
        self._last_error_report = result.error or ""
        logger.warning(
            f"Round {self.round}: edit application failed in {failed} "
            f"(no progress for {self.history.no_progress_rounds} round(s))"
        )

        if self._in_review:
            self._after_review_round_failure()
        elif self.round >= self.settings.max_rounds:
            self._error = f"Edit application failed: {result.error}"
            self._transition(LoopState.ROUNDS_EXHAUSTED)
        else:
            self._transition(LoopState.CORRECTING)

    def _step_validate(self) -> None:
        touched = _unique_paths(self._validated + self._current)
        report, errors = self._run_validation(touched)

        if (
            not report.passed
            and self.settings.enable_auto_fix
            and errors
        ):
            fixable = [e for e in errors if error_parser.is_relevant_file(e.file, touched)]
            fix = self.auto_fixer.apply(fixable)
            if fix.fixed_count:
                logger.info(f"Auto-fixed {fix.fixed_count} issue(s), re-validating")
                report, errors = self._run_validation(touched)

        relevant = [e for e in errors if _error_key(e) not in self._baseline
                    or error_parser.is_relevant_file(e.file, touched)]
        passed = report.passed or (bool(errors) and not relevant)
        if not report.passed and passed:
            logger.info("Only pre-existing errors remain; treating validation as passed")

        if passed:
            self._on_validation_passed()
            return

        self._last_errors = relevant
        if self.settings.enable_structured_errors and relevant:
            self._last_error_report = error_parser.prioritize(
                relevant, touched, self.settings.error_report_max_chars
            )
        else:
            self._last_error_report = ""
        if not self._last_error_report:
            self._last_error_report = report.error_output[: self.settings.error_report_max_chars]

        kind = self._classify_failure(report)
        hard_errors, warnings = error_parser.separate(relevant)
        self.history.record(
            self.round,
            kind,
            self._summarize_failure(report, hard_errors, warnings),
            error_count=len(hard_errors) if relevant else None,
        )
        logger.warning(
            f"Round {self.round}: validation failed ({len(hard_errors)} error(s), "
            f"{len(warnings)} warning(s))"
        )

        if self._in_review:
            self._after_review_round_failure()
        elif self.round >= self.settings.max_rounds:
            self._error = f"Validation failed after {self.round + 1} attempt(s)"
            self._transition(LoopState.ROUNDS_EXHAUSTED)
        else:
            self._transition(LoopState.CORRECTING)

    def _step_correct(self) -> None:
        self.round += 1
        last = self.history.last()
        if self.transitions[-1][0] == LoopState.CORRECTING and self._last_request is not None:
            # workspace already restored; reuse the context read before the restore
            request = replace(self._last_request, round=self.round)
        elif last is not None and last.error_type == AttemptKind.APPLY:
            self.snapshot.restore()
            request = self._build_request()
        else:
            # validation/test failure: capture the failing content, then roll back
            request = self._build_request()
            self.snapshot.restore()
        self._last_request = request
        logger.info(
            f"Requesting correction round {self.round}/{self.settings.max_rounds} "
            f"({request.reason.value}{', escalated' if request.is_escalated else ''})"
        )

        changes = self.provider.generate(request) if self.provider else None
        if changes:
            self._current = list(changes)
            self._transition(LoopState.EXECUTING)
            return

        logger.warning(f"Correction round {self.round} produced no usable edit set")
        if self.round >= self.settings.max_rounds:
            self._error = "Correction rounds exhausted without a usable edit set"
            self._transition(LoopState.ROUNDS_EXHAUSTED)
        elif self.cancelled:
            self._error = "Cancelled"
            self._transition(LoopState.CANCELLED)
        else:
            self._transition(LoopState.CORRECTING)

    def _step_review(self) -> None:
        changed = self.snapshot.changed_files()
        review = self.reviewer.review(self.workspace_root, changed)
        self._review = review

        if review.passed:
            self._transition(LoopState.SUCCESS)
        elif self.review_attempts >= self.settings.max_review_attempts:
            logger.warning(f"{review.critical_count} CRITICAL finding(s) unresolved")
            self._error = f"{review.critical_count} CRITICAL review finding(s) unresolved"
            self._transition(LoopState.PARTIAL_SUCCESS)
        else:
            self._transition(LoopState.REVIEW_CORRECTING)

    def _step_review_correct(self) -> None:
        self.review_attempts += 1
        review = self._review
        came_from_review = self.transitions[-1][0] == LoopState.REVIEW
        if came_from_review:
            # apply/validation failures of a review round are already recorded
            rules = sorted({f.rule for f in review.critical_findings})
            self.history.record(
                self.round,
                AttemptKind.REVIEW,
                f"{review.critical_count} CRITICAL finding(s): {', '.join(rules)}",
            )
        self._in_review = True

        touched = _unique_paths(self._validated)
        request = CorrectionRequest(
            task=self.task,
            round=self.review_attempts,
            reason=AttemptKind.REVIEW,
            files=read_current_files(self.workspace_root, touched),
            error_report=self._last_error_report,
            attempts=list(self.history.attempts),
            review_findings=format_for_correction(review),
            previous_changes=list(self._validated),
            workspace_restored=False,
        )
        logger.info(
            f"Requesting review correction {self.review_attempts}/{self.settings.max_review_attempts}"
        )

        changes = self.provider.generate(request) if self.provider else None
        if not changes:
            self._error = f"{review.critical_count} CRITICAL review finding(s) unresolved"
            self._transition(LoopState.PARTIAL_SUCCESS)
            return

        self._checkpoint = WorkspaceSnapshot(self.workspace_root)
        self._current = list(changes)
        self._transition(LoopState.EXECUTING)

    # -- helpers -----------------------------------------------------------

    def _on_validation_passed(self) -> None:
        self._validated.extend(self._current)
        self._last_errors = []
        self._last_error_report = ""
        self.history.reset_progress()

        wants_review = (
            self.reviewer is not None
            and self.settings.enable_review
            and bool(self.snapshot.changed_files())
        )
        if self._in_review:
            logger.info("Review correction validated; re-running review")
            self._transition(LoopState.REVIEW)
        elif wants_review:
            logger.info(f"Validation passed on round {self.round}; running review")
            self._transition(LoopState.REVIEW)
        else:
            logger.info(f"Validation passed on round {self.round}")
            self._transition(LoopState.SUCCESS)

    def _after_review_round_failure(self) -> None:
        self._checkpoint.restore()
        self._current = []
        if self.review_attempts >= self.settings.max_review_attempts:
            self._error = "Review correction failed to apply or validate"
            self._transition(LoopState.PARTIAL_SUCCESS)
        else:
            self._transition(LoopState.REVIEW_CORRECTING)

    def _run_validation(self, touched: list[str]) -> tuple[ValidationReport, list[StructuredError]]:
        report = self.validator.validate(self.workspace_root, touched)
        if report.passed or not self.settings.enable_structured_errors:
            return report, []
        return report, error_parser.parse_validation_report(report)

    def _take_baseline(self, touched: list[str]) -> None:
        report = self.validator.validate(self.workspace_root, touched)
        if report.passed:
            return
        baseline = error_parser.parse_validation_report(report)
        self._baseline = {_error_key(e) for e in baseline}
        logger.info(f"Baseline validation: {len(baseline)} pre-existing error(s)")

    @staticmethod
    def _classify_failure(report: ValidationReport) -> AttemptKind:
        failed = {s.step for s in report.failed_steps}
        if failed == {ValidationStep.TEST}:
            return AttemptKind.TEST
        return AttemptKind.VALIDATION

    @staticmethod
    def _summarize_failure(
        report: ValidationReport,
        errors: list[StructuredError],
        warnings: list[StructuredError],
    ) -> str:
        if errors or warnings:
            return f"{len(errors)} errors, {len(warnings)} warnings"
        for step in report.failed_steps:
            preview = next((line for line in step.output.splitlines() if line.strip()), "")
            return f"{step.step.value} failed ({step.status.value}): {preview[:120]}"
        return "validation failed"

    def _build_request(self) -> CorrectionRequest:
        last = self.history.last()
        reason = last.error_type if last else AttemptKind.VALIDATION
        touched = _unique_paths(self._current)
        files = read_current_files(self.workspace_root, touched)

        failed_file = None
        failed_edit_index = None
        if reason == AttemptKind.APPLY and self._last_apply is not None:
            failed_file = self._last_apply.failed_file
            failed_edit_index = self._last_apply.failed_edit_index

        type_definitions = ""
        if self.settings.enable_structured_errors and self._last_errors:
            names = error_parser.extract_type_names(self._last_errors)
            if names:
                type_definitions = self.type_lookup.lookup(self.workspace_root, names)

        escalation = ""
        if self.history.should_escalate(self.settings.escalation_after):
            if failed_file:
                targets = [failed_file]
            else:
                targets = sorted({e.file for e in self._last_errors})
            escalation = build_escalation_snippets(files, targets)

        return CorrectionRequest(
            task=self.task,
            round=self.round,
            reason=reason,
            files=files,
            previous_changes=list(self._current),
            failed_file=failed_file,
            failed_edit_index=failed_edit_index,
            error_report=self._last_error_report,
            attempts=list(self.history.attempts),
            type_definitions=type_definitions,
            escalation_snippets=escalation,
            workspace_restored=True,
        )

    def _build_result(self) -> LoopResult:
        status = self.state.to_status()
        changed: list[str] = []
        if status in (ExecutionStatus.SUCCESS, ExecutionStatus.PARTIAL_SUCCESS) and self.snapshot:
            changed = self.snapshot.changed_files()

        final_errors: list[StructuredError] = []
        error_report = ""
        if status == ExecutionStatus.ROUNDS_EXHAUSTED:
            final_errors = list(self._last_errors)
            error_report = self._last_error_report

        final_changes = list(self._validated) if self._validated else list(self._current)

        logger.info(
            f"Correction loop finished: {status.value} after {self.round} correction round(s)"
        )
        return LoopResult(
            status=status,
            rounds_used=self.round,
            review_attempts_used=self.review_attempts,
            attempts=list(self.history.attempts),
            final_errors=final_errors,
            error_report=error_report,
            changed_files=changed,
            final_changes=final_changes,
            review=self._review,
            error=None if status == ExecutionStatus.SUCCESS else self._error,
            transitions=list(self.transitions),
        )
