"""
forgeloop: apply proposed code edits and correct them until the project's
own build, lint and test tooling agrees.
"""

__version__ = "0.1.0"

from forgeloop.core.correction_loop import CorrectionLoop, LoopResult
from forgeloop.core.models import ExecutionStatus, FileChange, Edit
from forgeloop.core.patcher import PatchApplier, apply_changes

__all__ = [
    "CorrectionLoop",
    "LoopResult",
    "ExecutionStatus",
    "FileChange",
    "Edit",
    "PatchApplier",
    "apply_changes",
]
