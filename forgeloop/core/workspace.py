"""Pre-task snapshots of workspace files, with restore and diff.

The correction loop captures every file a round is about to touch before the
first write. Restoring puts those files back exactly: tracked files that were
clean at capture time are checked out from git, everything else is rewritten
from the captured bytes, and files that did not exist are deleted.

Works on plain directories too; git is used only when the workspace root is a
repository.

This module is headless - no FastAPI or HTTP dependencies.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import git

from forgeloop.core.exceptions import FatalEnvironmentError, PathViolationError
from forgeloop.core.patcher import resolve_workspace_path

logger = logging.getLogger(__name__)


@dataclass
class CapturedFile:
    """State of one file at capture time."""

    path: str
    existed: bool
    content: Optional[bytes] = None
    git_clean: bool = False


def _open_repo(workspace_root: Path) -> Optional[git.Repo]:
    try:
        return git.Repo(workspace_root)
    except git.InvalidGitRepositoryError:
        return None
    except git.NoSuchPathError:
        raise FatalEnvironmentError(f"Workspace does not exist: {workspace_root}")


class WorkspaceSnapshot:
    """Remembers the pre-task state of files touched by the loop.

    Only the first capture of a path counts; later captures of the same path
    are ignored so restore always returns to the state before the task.
    """

    def __init__(self, workspace_root: Path | str):
        self.workspace_root = Path(workspace_root)
        if not self.workspace_root.is_dir():
            raise FatalEnvironmentError(f"Workspace does not exist: {self.workspace_root}")
        self.repo = _open_repo(self.workspace_root)
        self._files: dict[str, CapturedFile] = {}

    def _is_git_clean(self, path: str) -> bool:
        if self.repo is None:
            return False
        try:
            tracked = self.repo.git.ls_files("--", path)
            if not tracked:
                return False
            return not self.repo.git.status("--porcelain", "--", path)
        except git.GitCommandError as e:
            logger.debug(f"git status failed for {path}: {e}")
            return False

    def capture(self, paths: Iterable[str]) -> None:
        """Record the current state of *paths* (first capture wins).

        Raises:
            PathViolationError: If a path escapes the workspace
            FatalEnvironmentError: If an existing file cannot be read
        """
        for path in paths:
            if path in self._files:
                continue
            full_path = resolve_workspace_path(self.workspace_root, path)
            if not full_path.exists():
                self._files[path] = CapturedFile(path=path, existed=False)
                continue
            try:
                content = full_path.read_bytes()
            except OSError as e:
                raise FatalEnvironmentError(f"Cannot read {path} for snapshot: {e}") from e
            self._files[path] = CapturedFile(
                path=path,
                existed=True,
                content=content,
                git_clean=self._is_git_clean(path),
            )

    def restore(self, paths: Optional[Iterable[str]] = None) -> list[str]:
        """Put captured files back to their pre-task state.

        Args:
            paths: Subset to restore (default: everything captured)

        Returns:
            Paths that were restored

        Raises:
            FatalEnvironmentError: If any file cannot be restored
        """
        targets = list(self._files) if paths is None else [p for p in paths if p in self._files]
        restored = []

        for path in targets:
            captured = self._files[path]
            try:
                full_path = resolve_workspace_path(self.workspace_root, path)
            except PathViolationError as e:
                raise FatalEnvironmentError(str(e)) from e

            try:
                if not captured.existed:
                    if full_path.exists():
                        full_path.unlink()
                elif captured.git_clean and self.repo is not None:
                    self.repo.git.checkout("--", path)
                else:
                    full_path.parent.mkdir(parents=True, exist_ok=True)
                    full_path.write_bytes(captured.content or b"")
            except (OSError, git.GitCommandError) as e:
                raise FatalEnvironmentError(f"Failed to restore {path}: {e}") from e

            restored.append(path)

        if restored:
            logger.info(f"Restored {len(restored)} file(s) to pre-task state")
        return restored

    def changed_files(self) -> list[str]:
        """Captured paths whose current state differs from the snapshot."""
        changed = []
        for path, captured in self._files.items():
            full_path = resolve_workspace_path(self.workspace_root, path)
            exists = full_path.exists()
            if exists != captured.existed:
                changed.append(path)
                continue
            if not exists:
                continue
            if captured.git_clean and self.repo is not None:
                try:
                    if self.repo.git.status("--porcelain", "--", path):
                        changed.append(path)
                    continue
                except git.GitCommandError:
                    pass
            try:
                if full_path.read_bytes() != captured.content:
                    changed.append(path)
            except OSError as e:
                raise FatalEnvironmentError(f"Cannot read {path}: {e}") from e
        return changed


def read_current_files(workspace_root: Path | str, paths: Iterable[str]) -> dict[str, str]:
    """Current text of each existing path; missing or unsafe paths are omitted."""
    root = Path(workspace_root)
    contents: dict[str, str] = {}
    for path in paths:
        if path in contents:
            continue
        try:
            full_path = resolve_workspace_path(root, path)
        except PathViolationError:
            continue
        if not full_path.is_file():
            continue
        try:
            contents[path] = full_path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.debug(f"Could not read {path}: {e}")
    return contents
