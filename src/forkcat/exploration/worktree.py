"""Per-attempt git worktrees and branches."""

from __future__ import annotations

import shutil
import threading
from pathlib import Path

from forkcat.core.errors import GitCommandError, ProvisioningError
from forkcat.core.log import logger
from forkcat.git.repository import GitRepository, WorktreeInfo

BRANCH_PREFIX = "exploration"


class WorktreeManager:
    """Creates and tears down attempt checkouts of one repository.

    Git serializes poorly on a shared .git directory, so mutations
    are funneled through one lock per manager; the sandboxes that use
    the worktrees still run concurrently.

    Removal is idempotent: removing a worktree or branch that is
    already gone is a no-op, because cleanup gets retried after
    partial failures.
    """

    def __init__(self, repository: GitRepository):
        self.repository = repository
        self._lock = threading.Lock()

    def create_worktree(self, path: Path, branch: str, base_ref: str = "HEAD") -> Path:
        """Create ``branch`` at ``base_ref`` and check it out at ``path``.

        Raises:
            ProvisioningError: If the branch already exists or git fails
        """
        path = Path(path)
        with self._lock:
            if self.repository.branch_exists(branch):
                raise ProvisioningError(f"Branch {branch} already exists")
            if path.exists() and any(path.iterdir()):
                raise ProvisioningError(f"Worktree path {path} is not empty")
            path.parent.mkdir(parents=True, exist_ok=True)
            try:
                self.repository.add_worktree(path, branch, base_ref)
            except GitCommandError as e:
                raise ProvisioningError(str(e)) from e
        logger.debug("Worktree created", path=str(path), branch=branch)
        return path

    def list_worktrees(self) -> list[WorktreeInfo]:
        return self.repository.list_worktrees()

    def find_worktree(self, path: Path) -> WorktreeInfo | None:
        resolved = Path(path).resolve()
        for info in self.list_worktrees():
            if info.path.resolve() == resolved:
                return info
        return None

    def worktree_exists(self, path: Path) -> bool:
        return self.find_worktree(path) is not None

    def remove_worktree(self, path: Path, force: bool = False) -> bool:
        """Remove the worktree at ``path``.

        Returns:
            True if something was removed, False if it was already gone
        """
        path = Path(path)
        with self._lock:
            removed = False
            if path.exists() and self.find_worktree(path) is not None:
                try:
                    self.repository.remove_worktree(path, force=force)
                    removed = True
                except GitCommandError as e:
                    if "is not a working tree" not in e.stderr:
                        raise
            # Directory deleted by hand leaves stale metadata behind
            self.repository.prune_worktrees()
            if force and path.exists():
                shutil.rmtree(path, ignore_errors=True)
                removed = True
        if removed:
            logger.debug("Worktree removed", path=str(path))
        return removed

    def delete_branch(self, name: str, force: bool = False) -> bool:
        """Delete branch ``name``; returns False if it did not exist."""
        with self._lock:
            if not self.repository.branch_exists(name):
                return False
            try:
                self.repository.delete_branch(name, force=force)
            except GitCommandError as e:
                if "not found" in e.stderr:
                    return False
                raise
        logger.debug("Branch deleted", branch=name)
        return True

    def list_exploration_branches(self, exploration_id: str | None = None) -> list[str]:
        prefix = BRANCH_PREFIX
        if exploration_id:
            prefix = f"{prefix}/{exploration_id}"
        return self.repository.list_branches(prefix)
