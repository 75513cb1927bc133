"""Configuration for the correction loop.

Settings come from ``FORGELOOP_*`` environment variables (and a ``.env``
file when present); every field can also be passed explicitly.
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from forgeloop.core.validation import ValidationStep


class LoopSettings(BaseSettings):
    """Correction loop settings loaded from environment variables."""

    # Budgets
    max_rounds: int = 5
    max_review_attempts: int = 2
    escalation_after: int = 2
    error_report_max_chars: int = 2000
    type_definition_max_chars: int = 1500

    # Feature flags
    atomic_edits: bool = True
    enable_auto_fix: bool = True
    enable_structured_errors: bool = True
    enable_review: bool = True
    take_baseline: bool = False

    # Validation step timeouts (seconds)
    install_timeout: float = 300
    lint_timeout: float = 60
    build_timeout: float = 120
    test_timeout: float = 300

    # Validation command overrides (shell-style strings)
    install_command: Optional[str] = None
    lint_command: Optional[str] = None
    build_command: Optional[str] = None
    test_command: Optional[str] = None

    # Logging
    log_level: str = Field("INFO")

    model_config = SettingsConfigDict(
        env_prefix="FORGELOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"FORGELOOP_LOG_LEVEL must be one of {allowed}, got: {v}")
        return v_upper

    @field_validator(
        "escalation_after", "error_report_max_chars", "type_definition_max_chars",
        "install_timeout", "lint_timeout", "build_timeout", "test_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be positive, got: {v}")
        return v

    @field_validator("max_rounds", "max_review_attempts")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be zero or more, got: {v}")
        return v

    def step_timeouts(self) -> dict[ValidationStep, float]:
        return {
            ValidationStep.INSTALL: self.install_timeout,
            ValidationStep.LINT: self.lint_timeout,
            ValidationStep.BUILD: self.build_timeout,
            ValidationStep.TEST: self.test_timeout,
        }

    def command_overrides(self) -> dict[ValidationStep, str]:
        overrides = {
            ValidationStep.INSTALL: self.install_command,
            ValidationStep.LINT: self.lint_command,
            ValidationStep.BUILD: self.build_command,
            ValidationStep.TEST: self.test_command,
        }
        return {step: cmd for step, cmd in overrides.items() if cmd is not None}


def load_environment(env_file: str = ".env") -> None:
    """Load environment variables from .env file.

    Args:
        env_file: Path to .env file (default: .env in current directory)
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)
        # Also try project root .env if we're in a subdirectory
        if not env_path.is_absolute():
            root_env = Path.cwd() / ".env"
            if root_env.exists() and root_env != env_path.absolute():
                load_dotenv(root_env)
