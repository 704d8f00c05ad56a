from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from .commands import run_command
from .errors import WorktreeError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "workflow/"


class WorktreeManager(Protocol):
    async def create_worktree(self, workflow_name: str) -> str:
        ...

    def worktree_exists(self, path: str) -> bool:
        ...

    async def delete_worktree(self, path: str) -> None:
        ...


class GitWorktreeManager:
    """Creates one ``git worktree`` per workflow beside the repository.

    Worktrees live at ``<repo>/../worktrees/<name>`` on branch ``workflow/<name>``.
    """

    def __init__(self, repo_dir: Path | str) -> None:
        self.repo_dir = Path(repo_dir)

    @property
    def worktrees_dir(self) -> Path:
        return (self.repo_dir / ".." / "worktrees").resolve()

    def worktree_exists(self, path: str) -> bool:
        if not path:
            return False
        candidate = Path(path)
        return candidate.is_dir() and (candidate / ".git").exists()

    async def create_worktree(self, workflow_name: str) -> str:
        if not workflow_name:
            raise WorktreeError("workflow name cannot be empty")
        path = self.worktrees_dir / workflow_name
        if self.worktree_exists(str(path)):
            logger.info("Reusing existing worktree %s", path)
            return str(path)

        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        branch = f"{BRANCH_PREFIX}{workflow_name}"
        result = await run_command("git", "worktree", "add", str(path), "-b", branch, cwd=self.repo_dir)
        if result.returncode != 0:
            if "already exists" in result.stderr:
                raise WorktreeError(f"branch {branch} already exists")
            raise WorktreeError(f"failed to create worktree at {path}: {result.stderr}")
        logger.info("Created worktree %s on branch %s", path, branch)
        return str(path)

    async def delete_worktree(self, path: str) -> None:
        if not path:
            raise WorktreeError("worktree path cannot be empty")
        if not self.worktree_exists(path):
            return
        result = await run_command("git", "worktree", "remove", path, cwd=self.repo_dir)
        if result.returncode != 0:
            raise WorktreeError(f"failed to remove worktree at {path}: {result.stderr}")
        logger.info("Removed worktree %s", path)
