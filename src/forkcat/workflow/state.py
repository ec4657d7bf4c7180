"""Runtime state threaded through the merge workflow."""

from __future__ import annotations

from pydantic import ConfigDict, Field

from forkcat.core.base import BaseState
from forkcat.exploration.models import Exploration
from forkcat.exploration.state import ExplorationStateManager
from forkcat.exploration.worktree import WorktreeManager
from forkcat.git.repository import GitRepository
from forkcat.merge.models import MergeConflict, MergeOptions, MergePreview, MergeResult


class MergeRun(BaseState):
    """One merge-back of one attempt, from validation to result."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    exploration_id: str
    attempt_index: int
    options: MergeOptions
    repository: GitRepository
    state: ExplorationStateManager
    worktrees: WorktreeManager

    exploration: Exploration | None = None
    source_branch: str | None = None
    target_branch: str | None = None
    # Branch checked out in the main working tree before the merge
    original_branch: str | None = None
    # Target tip before any mutation; rollback resets to it
    target_tip: str | None = None
    preview: MergePreview | None = None
    backup_branch: str | None = None
    conflicts: list[MergeConflict] = Field(default_factory=list)
    mutated: bool = False

    def failure(self, error: str) -> MergeResult:
        return MergeResult(
            success=False,
            strategy=self.options.strategy,
            source_branch=self.source_branch or "",
            target_branch=self.target_branch or "",
            backup_branch=self.backup_branch,
            conflicts=self.conflicts,
            error=error,
        )
