"""Tests for LoopSettings and .env loading."""

import os

import pytest
from pydantic import ValidationError

from forgeloop.core.config import LoopSettings, load_environment
from forgeloop.core.validation import ValidationStep


class TestLoopSettings:
    def test_defaults(self):
        settings = LoopSettings()

        assert settings.max_rounds == 5
        assert settings.max_review_attempts == 2
        assert settings.escalation_after == 2
        assert settings.error_report_max_chars == 2000
        assert settings.type_definition_max_chars == 1500
        assert settings.atomic_edits is True
        assert settings.enable_auto_fix is True
        assert settings.enable_structured_errors is True
        assert settings.enable_review is True
        assert settings.take_baseline is False
        assert settings.log_level == "INFO"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("FORGELOOP_MAX_ROUNDS", "3")
        monkeypatch.setenv("FORGELOOP_ATOMIC_EDITS", "false")
        monkeypatch.setenv("FORGELOOP_LOG_LEVEL", "debug")

        settings = LoopSettings()

        assert settings.max_rounds == 3
        assert settings.atomic_edits is False
        assert settings.log_level == "DEBUG"

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("FORGELOOP_ESCALATION_AFTER=4\n")
        assert LoopSettings().escalation_after == 4

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError, match="FORGELOOP_LOG_LEVEL"):
            LoopSettings(log_level="LOUD")

    @pytest.mark.parametrize("field", ["escalation_after", "error_report_max_chars", "lint_timeout"])
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            LoopSettings(**{field: 0})

    def test_zero_rounds_allowed_negative_rejected(self):
        assert LoopSettings(max_rounds=0).max_rounds == 0
        with pytest.raises(ValidationError):
            LoopSettings(max_review_attempts=-1)

    def test_step_timeouts(self):
        timeouts = LoopSettings(build_timeout=45).step_timeouts()
        assert timeouts[ValidationStep.BUILD] == 45
        assert timeouts[ValidationStep.INSTALL] == 300

    def test_command_overrides_only_include_set_commands(self):
        settings = LoopSettings(lint_command="", test_command="vitest run")
        assert settings.command_overrides() == {
            ValidationStep.LINT: "",
            ValidationStep.TEST: "vitest run",
        }


class TestLoadEnvironment:
    def test_loads_file_into_environ(self, tmp_path, monkeypatch):
        monkeypatch.delenv("FORGELOOP_TEST_ONLY", raising=False)
        env_file = tmp_path / "custom.env"
        env_file.write_text("FORGELOOP_TEST_ONLY=yes\n")

        load_environment(str(env_file))

        assert os.environ["FORGELOOP_TEST_ONLY"] == "yes"
        monkeypatch.delenv("FORGELOOP_TEST_ONLY")

    def test_missing_file_is_ignored(self, tmp_path):
        load_environment(str(tmp_path / "absent.env"))
