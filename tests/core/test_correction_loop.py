"""Tests for the CorrectionLoop state machine.

Validators here are fakes that inspect the workspace on disk, so every test
exercises the real applier, snapshot/restore, error parser and auto-fixer.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Optional

import pytest

from forgeloop.core.config import LoopSettings
from forgeloop.core.correction import CorrectionProvider, CorrectionRequest, ScriptedCorrectionProvider
from forgeloop.core.correction_loop import CorrectionLoop
from forgeloop.core.exceptions import FatalEnvironmentError
from forgeloop.core.models import AttemptKind, Edit, ExecutionStatus, FileAction, FileChange
from forgeloop.core.review import HeuristicReviewer
from forgeloop.core.states import LoopState
from forgeloop.core.validation import StepResult, StepStatus, ValidationReport, ValidationStep, Validator

pytestmark = pytest.mark.v2

MARKER = "BROKEN"
SECRET_LINE = 'const token = "abcdefghijklmnop";\n\n'


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class MarkerValidator(Validator):
    """Fails the build for every .ts line containing MARKER."""

    def __init__(self, message: str = f"error TS2304: Cannot find name '{MARKER}'."):
        self.message = message
        self.calls: list[list[str]] = []

    def validate(self, workspace_root: Path, changed_files: list[str], timeout: Optional[float] = None):
        self.calls.append(list(changed_files))
        root = Path(workspace_root)
        lines = []
        for path in sorted(root.rglob("*.ts")):
            rel = path.relative_to(root).as_posix()
            for i, line in enumerate(path.read_text().split("\n"), start=1):
                if MARKER in line:
                    lines.append(f"{rel}({i},1): {self.message}")
        if lines:
            return ValidationReport(steps=[StepResult(ValidationStep.BUILD, StepStatus.FAIL, "\n".join(lines))])
        return ValidationReport(steps=[StepResult(ValidationStep.BUILD, StepStatus.OK, "")])


class CallbackValidator(Validator):
    def __init__(self, check: Callable[[Path], ValidationReport]):
        self.check = check
        self.calls = 0

    def validate(self, workspace_root: Path, changed_files: list[str], timeout: Optional[float] = None):
        self.calls += 1
        return self.check(Path(workspace_root))


class CancellingProvider(CorrectionProvider):
    """Hands back an edit set but cancels the loop first."""

    def __init__(self, changes: list[FileChange]):
        self.changes = changes
        self.loop: Optional[CorrectionLoop] = None

    def generate(self, request: CorrectionRequest):
        self.loop.cancel()
        return self.changes


def replace_in(path: str, search: str, replace: str) -> FileChange:
    return FileChange(path=path, action=FileAction.MODIFY, edits=[Edit(search=search, replace=replace)])


GOOD = [replace_in("src/greet.ts", "Hello", "Hi")]
BROKEN = [replace_in("src/greet.ts", "Hello", f"{MARKER} Hello")]


def settings(**kwargs) -> LoopSettings:
    return LoopSettings(**kwargs)


def greet_text(workspace: Path) -> str:
    return (workspace / "src" / "greet.ts").read_text()


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------


class TestHappyPath:
    def test_valid_changes_succeed_without_corrections(self, workspace):
        validator = MarkerValidator()
        provider = ScriptedCorrectionProvider()
        loop = CorrectionLoop(workspace, validator, provider, settings=settings())

        result = loop.run("Shorten greeting", GOOD)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.success
        assert result.rounds_used == 0
        assert result.attempts == []
        assert result.changed_files == ["src/greet.ts"]
        assert result.final_changes == GOOD
        assert result.error is None
        assert provider.requests == []
        assert validator.calls == [["src/greet.ts"]]
        assert result.transitions == [
            (LoopState.EXECUTING, LoopState.VALIDATING),
            (LoopState.VALIDATING, LoopState.SUCCESS),
        ]
        assert "Hi, ${name}" in greet_text(workspace)

    def test_result_serializes(self, workspace):
        result = CorrectionLoop(workspace, MarkerValidator(), settings=settings()).run("t", GOOD)
        data = json.loads(json.dumps(result.to_dict()))
        assert data["status"] == "SUCCESS"
        assert data["changed_files"] == ["src/greet.ts"]


class TestValidationCorrection:
    def test_failed_validation_is_corrected(self, workspace):
        provider = ScriptedCorrectionProvider([GOOD])
        loop = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings())

        result = loop.run("Shorten greeting", BROKEN)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.rounds_used == 1
        assert [a.error_type for a in result.attempts] == [AttemptKind.VALIDATION]

        request = provider.requests[0]
        assert request.round == 1
        assert request.reason == AttemptKind.VALIDATION
        assert request.workspace_restored
        assert "TS2304" in request.error_report
        assert f"{MARKER} Hello" in request.files["src/greet.ts"]
        assert request.previous_changes == BROKEN
        assert not request.is_escalated
        assert MARKER not in greet_text(workspace)

    def test_request_shows_files_created_by_the_failed_round(self, workspace):
        created = [FileChange(path="src/new.ts", action=FileAction.CREATE, content=f"export {{}};\n{MARKER}\n")]
        provider = ScriptedCorrectionProvider()
        loop = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings(max_rounds=1))

        loop.run("Add a module", created)

        request = provider.requests[0]
        assert request.files == {"src/new.ts": f"export {{}};\n{MARKER}\n"}
        assert "src/new.ts:2:1" in request.error_report
        assert not (workspace / "src" / "new.ts").exists()

    def test_apply_failure_request_reads_restored_files(self, workspace):
        original = greet_text(workspace)
        changes = [
            replace_in("src/greet.ts", "Hello", f"{MARKER} Hello"),
            replace_in("src/greet.ts", "Goodbye", "x"),
        ]
        provider = ScriptedCorrectionProvider()
        CorrectionLoop(
            workspace, MarkerValidator(), provider, settings=settings(max_rounds=1, atomic_edits=False)
        ).run("t", changes)

        assert provider.requests[0].files["src/greet.ts"] == original

    def test_retry_after_unusable_output_keeps_failing_content(self, workspace):
        provider = ScriptedCorrectionProvider()
        CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings(max_rounds=2)).run("t", BROKEN)

        first, second = provider.requests
        assert second.round == 2
        assert second.files == first.files
        assert MARKER in second.files["src/greet.ts"]
        assert MARKER not in greet_text(workspace)

    def test_rounds_exhausted_after_exactly_max_rounds_requests(self, workspace):
        validator = MarkerValidator()
        provider = ScriptedCorrectionProvider([BROKEN] * 5)
        loop = CorrectionLoop(workspace, validator, provider, settings=settings(max_rounds=2))

        result = loop.run("Shorten greeting", BROKEN)

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert len(provider.requests) == 2
        assert result.rounds_used == 2
        assert len(result.attempts) == 3
        assert len(validator.calls) == 3
        assert result.final_errors[0].file == "src/greet.ts"
        assert "TS2304" in result.error_report
        assert MARKER in greet_text(workspace)

    def test_repeated_failure_escalates(self, workspace):
        provider = ScriptedCorrectionProvider([BROKEN] * 5)
        loop = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings(max_rounds=2))

        loop.run("Shorten greeting", BROKEN)

        assert not provider.requests[0].is_escalated
        assert provider.requests[1].is_escalated
        assert "--- src/greet.ts (first 80 lines) ---" in provider.requests[1].escalation_snippets
        assert loop.no_progress_rounds == 3

    def test_zero_rounds_never_calls_provider(self, workspace):
        provider = ScriptedCorrectionProvider([GOOD])
        result = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings(max_rounds=0)).run(
            "t", BROKEN
        )

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert provider.requests == []

    def test_unusable_provider_output_still_counts_rounds(self, workspace):
        provider = ScriptedCorrectionProvider()
        result = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings(max_rounds=2)).run(
            "t", BROKEN
        )

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert len(provider.requests) == 2
        assert "without a usable edit set" in result.error
        assert (LoopState.CORRECTING, LoopState.CORRECTING) in result.transitions

    def test_type_definitions_attached_for_type_errors(self, workspace):
        (workspace / "src" / "types.ts").write_text("export interface Greeting {\n  text: string;\n}\n")
        validator = MarkerValidator(message="error TS2322: Type 'Greeting' is not assignable to type 'string'.")
        provider = ScriptedCorrectionProvider()

        CorrectionLoop(workspace, validator, provider, settings=settings(max_rounds=1)).run("t", BROKEN)

        assert "[src/types.ts] export interface Greeting {" in provider.requests[0].type_definitions

    def test_raw_report_when_structured_errors_disabled(self, workspace):
        provider = ScriptedCorrectionProvider()
        loop = CorrectionLoop(
            workspace, MarkerValidator(), provider,
            settings=settings(max_rounds=1, enable_structured_errors=False),
        )
        loop.run("t", BROKEN)

        request = provider.requests[0]
        assert request.error_report.startswith("[build] src/greet.ts(2,1)")
        assert request.type_definitions == ""


class TestApplyCorrection:
    def test_apply_failure_routes_to_correction(self, workspace):
        provider = ScriptedCorrectionProvider([GOOD])
        bad_search = [replace_in("src/greet.ts", "Goodbye", "Hi")]
        result = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings()).run("t", bad_search)

        assert result.status == ExecutionStatus.SUCCESS
        request = provider.requests[0]
        assert request.reason == AttemptKind.APPLY
        assert request.failed_file == "src/greet.ts"
        assert request.failed_edit_index == 0
        assert "Search string not found" in request.error_report
        assert (LoopState.EXECUTING, LoopState.CORRECTING) in result.transitions

    @pytest.mark.parametrize("atomic", [True, False])
    def test_failed_batch_leaves_workspace_untouched(self, workspace, atomic):
        before = (workspace / "src" / "app.ts").read_text()
        changes = [replace_in("src/app.ts", "main", "run"), replace_in("src/greet.ts", "Goodbye", "x")]
        loop = CorrectionLoop(workspace, MarkerValidator(), settings=settings(max_rounds=0, atomic_edits=atomic))

        result = loop.run("t", changes)

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert (workspace / "src" / "app.ts").read_text() == before
        assert result.attempts[0].error_type == AttemptKind.APPLY

    def test_undecodable_file_ends_with_terminal_status(self, workspace):
        (workspace / "src" / "legacy.ts").write_bytes(b"const s = '\xe9';\n")
        changes = [replace_in("src/legacy.ts", "const s", "let s")]

        result = CorrectionLoop(workspace, MarkerValidator(), settings=settings(max_rounds=0)).run("t", changes)

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert result.attempts[0].error_type == AttemptKind.APPLY
        assert "UTF-8" in result.error

    def test_path_violation_becomes_apply_failure(self, workspace):
        escape = [FileChange(path="../escape.ts", action=FileAction.CREATE, content="x")]
        result = CorrectionLoop(workspace, MarkerValidator(), settings=settings(max_rounds=0)).run("t", escape)

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert result.attempts[0].error_type == AttemptKind.APPLY
        assert "Path traversal" in result.error
        assert not (workspace.parent / "escape.ts").exists()


class TestAutoFixAndBaseline:
    @staticmethod
    def lint_check(root: Path) -> ValidationReport:
        content = (root / "src" / "app.ts").read_text()
        if "unusedThing" in content:
            output = "src/app.ts\n  1:17  error  'unusedThing' is defined but never used  no-unused-vars\n"
            return ValidationReport(steps=[StepResult(ValidationStep.LINT, StepStatus.FAIL, output)])
        return ValidationReport(steps=[StepResult(ValidationStep.LINT, StepStatus.OK)])

    UNUSED_IMPORT = [replace_in(
        "src/app.ts", "import { greet } from './greet';", "import { greet, unusedThing } from './greet';"
    )]

    def test_auto_fix_avoids_a_correction_round(self, workspace):
        validator = CallbackValidator(self.lint_check)
        provider = ScriptedCorrectionProvider()
        result = CorrectionLoop(workspace, validator, provider, settings=settings()).run("t", self.UNUSED_IMPORT)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.rounds_used == 0
        assert validator.calls == 2
        assert provider.requests == []
        first_line = (workspace / "src" / "app.ts").read_text().split("\n")[0]
        assert first_line == "import { greet } from './greet';"

    def test_auto_fix_disabled(self, workspace):
        loop = CorrectionLoop(
            workspace, CallbackValidator(self.lint_check),
            settings=settings(max_rounds=0, enable_auto_fix=False),
        )
        assert loop.run("t", self.UNUSED_IMPORT).status == ExecutionStatus.ROUNDS_EXHAUSTED

    def test_baseline_errors_outside_touched_files_are_ignored(self, workspace):
        (workspace / "src" / "legacy.ts").write_text(f"const x = {MARKER};\n")
        validator = MarkerValidator()
        loop = CorrectionLoop(workspace, validator, settings=settings(max_rounds=0, take_baseline=True))

        result = loop.run("t", GOOD)

        assert result.status == ExecutionStatus.SUCCESS
        assert len(validator.calls) == 2

    def test_without_baseline_pre_existing_errors_fail(self, workspace):
        (workspace / "src" / "legacy.ts").write_text(f"const x = {MARKER};\n")
        result = CorrectionLoop(workspace, MarkerValidator(), settings=settings(max_rounds=0)).run("t", GOOD)

        assert result.status == ExecutionStatus.ROUNDS_EXHAUSTED
        assert result.final_errors[0].file == "src/legacy.ts"


# ---------------------------------------------------------------------------
# Review sub-loop
# ---------------------------------------------------------------------------


ADD_SECRET = [replace_in("src/greet.ts", "export function greet", SECRET_LINE + "export function greet")]
REMOVE_SECRET = [replace_in("src/greet.ts", SECRET_LINE, "")]


class TestReview:
    def test_clean_review_succeeds(self, workspace):
        result = CorrectionLoop(
            workspace, MarkerValidator(), reviewer=HeuristicReviewer(), settings=settings()
        ).run("t", GOOD)

        assert result.status == ExecutionStatus.SUCCESS
        assert (LoopState.VALIDATING, LoopState.REVIEW) in result.transitions
        assert result.review is not None and result.review.passed

    def test_review_disabled(self, workspace):
        result = CorrectionLoop(
            workspace, MarkerValidator(), reviewer=HeuristicReviewer(), settings=settings(enable_review=False)
        ).run("t", ADD_SECRET)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.review is None

    def test_critical_finding_is_corrected(self, workspace):
        original = greet_text(workspace)
        provider = ScriptedCorrectionProvider([REMOVE_SECRET])
        result = CorrectionLoop(
            workspace, MarkerValidator(), provider, reviewer=HeuristicReviewer(), settings=settings()
        ).run("t", ADD_SECRET)

        assert result.status == ExecutionStatus.SUCCESS
        assert result.review_attempts_used == 1
        assert result.final_changes == ADD_SECRET + REMOVE_SECRET
        assert [a.error_type for a in result.attempts] == [AttemptKind.REVIEW]
        assert greet_text(workspace) == original

        request = provider.requests[0]
        assert request.reason == AttemptKind.REVIEW
        assert not request.workspace_restored
        assert "no-secrets" in request.review_findings
        assert "abcdefghijklmnop" in request.files["src/greet.ts"]

    def test_unresolved_findings_are_partial_success(self, workspace):
        result = CorrectionLoop(
            workspace, MarkerValidator(), ScriptedCorrectionProvider(),
            reviewer=HeuristicReviewer(), settings=settings(),
        ).run("t", ADD_SECRET)

        assert result.status == ExecutionStatus.PARTIAL_SUCCESS
        assert result.changed_files == ["src/greet.ts"]
        assert "CRITICAL" in result.error
        assert "abcdefghijklmnop" in greet_text(workspace)

    def test_review_budget_zero(self, workspace):
        provider = ScriptedCorrectionProvider([REMOVE_SECRET])
        result = CorrectionLoop(
            workspace, MarkerValidator(), provider,
            reviewer=HeuristicReviewer(), settings=settings(max_review_attempts=0),
        ).run("t", ADD_SECRET)

        assert result.status == ExecutionStatus.PARTIAL_SUCCESS
        assert provider.requests == []

    def test_breaking_review_fix_is_rolled_back(self, workspace):
        breaking_fix = [replace_in("src/greet.ts", SECRET_LINE, f"// {MARKER}\n")]
        result = CorrectionLoop(
            workspace, MarkerValidator(), ScriptedCorrectionProvider([breaking_fix]),
            reviewer=HeuristicReviewer(), settings=settings(max_review_attempts=1),
        ).run("t", ADD_SECRET)

        assert result.status == ExecutionStatus.PARTIAL_SUCCESS
        text = greet_text(workspace)
        assert MARKER not in text
        assert "abcdefghijklmnop" in text
        assert result.final_changes == ADD_SECRET


# ---------------------------------------------------------------------------
# Abort paths
# ---------------------------------------------------------------------------


class TestAbort:
    def test_missing_workspace_is_fatal(self, tmp_path):
        result = CorrectionLoop(tmp_path / "missing", MarkerValidator(), settings=settings()).run("t", GOOD)

        assert result.status == ExecutionStatus.FATAL
        assert "does not exist" in result.error
        assert result.transitions == [(LoopState.EXECUTING, LoopState.FATAL)]

    def test_fatal_error_from_validator(self, workspace):
        def explode(root: Path) -> ValidationReport:
            raise FatalEnvironmentError("toolchain vanished")

        result = CorrectionLoop(workspace, CallbackValidator(explode), settings=settings()).run("t", GOOD)

        assert result.status == ExecutionStatus.FATAL
        assert result.error == "toolchain vanished"

    def test_cancel_between_rounds(self, workspace):
        provider = CancellingProvider(GOOD)
        loop = CorrectionLoop(workspace, MarkerValidator(), provider, settings=settings())
        provider.loop = loop

        result = loop.run("t", BROKEN)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.rounds_used == 1
        assert loop.cancelled
        assert MARKER not in greet_text(workspace)
        assert "Hello" in greet_text(workspace)
