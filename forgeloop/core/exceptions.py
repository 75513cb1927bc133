"""Exception taxonomy for forgeloop.

Only unrecoverable or pre-I/O problems are raised. Apply failures and
validation failures are reported as result objects so the correction loop can
route them into the next round.
"""

from typing import Optional


class ForgeLoopError(Exception):
    """Base class for all forgeloop errors."""


class PathViolationError(ForgeLoopError):
    """Raised when a file path is absolute or escapes the workspace root.

    Raised before any file is touched, so the batch has no side effects.
    """

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{reason}: {path}")


class InvalidChangeError(ForgeLoopError):
    """Raised when a FileChange is malformed (e.g. modify without edits or content)."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid change for {path}: {reason}")


class ApplyFailure(ForgeLoopError):
    """An edit could not be resolved against the file content.

    Used internally by the patch applier; callers see an ApplyResult.
    """

    def __init__(self, message: str, file_path: str, edit_index: Optional[int] = None):
        self.file_path = file_path
        self.edit_index = edit_index
        super().__init__(message)


class ValidationFailure(ForgeLoopError):
    """A validation step exited non-zero."""


class StepTimeoutError(ValidationFailure):
    """A validation step exceeded its timeout."""

    def __init__(self, step: str, timeout: float):
        self.step = step
        self.timeout = timeout
        super().__init__(f"Validation step '{step}' timed out after {timeout:g}s")


class FatalEnvironmentError(ForgeLoopError):
    """The workspace is in a state the loop cannot recover from.

    Examples: the workspace root disappeared, a restore failed. Never retried.
    """
