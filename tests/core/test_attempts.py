"""Tests for correction attempt history and no-progress detection."""

import pytest

from forgeloop.core.attempts import (
    MAX_SUMMARY_CHARS,
    AttemptHistory,
    hash_error,
    normalize_error,
)
from forgeloop.core.models import AttemptKind

pytestmark = pytest.mark.v2


class TestNormalizeError:
    def test_strips_positions_and_paths(self):
        a = normalize_error("Error in /home/a/project/src/app.ts:10:5 at line 10")
        b = normalize_error("Error in /tmp/other/src/app.ts:99:1 at line 42")
        assert a == b
        assert "app.ts" in a

    def test_empty(self):
        assert normalize_error("") == ""

    def test_hash_is_short_and_stable(self):
        assert hash_error("Foo (1,2)") == hash_error("foo (3,4)")
        assert len(hash_error("anything")) == 12


class TestAttemptHistory:
    def test_records_in_order(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.APPLY, "first")
        history.record(1, AttemptKind.VALIDATION, "second")

        assert len(history) == 2
        assert [a.round for a in history.attempts] == [0, 1]
        assert history.last().error_summary == "second"
        assert history.format_history() == "Round 0 [apply]: first\nRound 1 [validation]: second"

    def test_truncates_long_summaries(self):
        history = AttemptHistory()
        attempt = history.record(0, AttemptKind.VALIDATION, "x" * 1000)
        assert len(attempt.error_summary) == MAX_SUMMARY_CHARS
        assert attempt.error_summary.endswith("...")

    def test_same_failed_file_is_no_progress(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.APPLY, "search not found A", failed_file="src/a.ts")
        assert history.no_progress_rounds == 1
        history.record(1, AttemptKind.APPLY, "search not found B", failed_file="src/a.ts")
        assert history.no_progress_rounds == 2
        assert history.should_escalate(2)

    def test_different_failed_file_resets(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.APPLY, "a", failed_file="src/a.ts")
        history.record(1, AttemptKind.APPLY, "b", failed_file="src/b.ts")
        assert history.no_progress_rounds == 1

    def test_error_count_not_dropping_is_no_progress(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.VALIDATION, "3 errors", error_count=3)
        history.record(1, AttemptKind.VALIDATION, "4 errors, different", error_count=4)
        assert history.no_progress_rounds == 2

    def test_error_count_dropping_is_progress(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.VALIDATION, "3 errors", error_count=3)
        history.record(1, AttemptKind.VALIDATION, "1 error", error_count=1)
        assert history.no_progress_rounds == 1

    def test_identical_summary_is_no_progress(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.TEST, "test failed at line 3")
        history.record(1, AttemptKind.TEST, "test failed at line 9")
        assert history.no_progress_rounds == 2

    def test_kind_change_is_progress(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.APPLY, "same", failed_file="src/a.ts")
        history.record(1, AttemptKind.VALIDATION, "same", error_count=2)
        assert history.no_progress_rounds == 1

    def test_reset_progress(self):
        history = AttemptHistory()
        history.record(0, AttemptKind.APPLY, "x", failed_file="a")
        history.record(1, AttemptKind.APPLY, "x", failed_file="a")
        history.reset_progress()

        assert history.no_progress_rounds == 0
        assert not history.should_escalate(1)
        history.record(2, AttemptKind.APPLY, "x", failed_file="a")
        assert history.no_progress_rounds == 1
        assert len(history) == 3
