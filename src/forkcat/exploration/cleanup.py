"""Explicit cleanup of finished or abandoned explorations."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from pydantic import BaseModel, Field

from forkcat.core.errors import ForkcatError
from forkcat.core.log import logger
from forkcat.exploration.models import Exploration, utcnow
from forkcat.exploration.provisioner import AttemptProvisioner
from forkcat.exploration.state import ExplorationStateManager
from forkcat.exploration.worktree import WorktreeManager
from forkcat.git.repository import GitRepository


class CleanupFilters(BaseModel):
    """Which explorations a bulk cleanup selects."""

    all: bool = Field(default=False, description="Every exploration")
    failed_only: bool = Field(
        default=False, description="Only failed or stopped explorations"
    )
    older_than_hours: float | None = Field(
        default=None, gt=0, description="Only explorations created earlier"
    )
    include_active: bool = Field(
        default=False, description="Also clean pending and running explorations"
    )

    def matches(self, exploration: Exploration) -> bool:
        if exploration.status in ("pending", "running") and not self.include_active:
            return False
        if self.failed_only and exploration.status not in ("failed", "stopped"):
            return False
        if self.older_than_hours is not None:
            cutoff = utcnow() - timedelta(hours=self.older_than_hours)
            if exploration.created_at > cutoff:
                return False
        return self.all or self.failed_only or self.older_than_hours is not None


class CleanupResult(BaseModel):
    explorations_cleaned: list[str] = Field(default_factory=list)
    worktrees_removed: int = 0
    branches_deleted: int = 0
    sandboxes_stopped: int = 0
    errors: list[str] = Field(default_factory=list)
    dry_run: bool = False


class ExplorationCleaner:
    """Releases every resource an exploration holds, then forgets it.

    Each step is idempotent, so cleanup can be re-run after a partial
    failure or after resources were removed by hand. Backup branches
    created by merges are never touched.

    Filtered cleanup only selects explorations of this cleaner's
    repository; one named by id is cleaned in the repository it ran in.
    """

    def __init__(self, state: ExplorationStateManager, provisioner: AttemptProvisioner):
        self.state = state
        self.provisioner = provisioner

    async def cleanup(
        self,
        exploration_id: str | None = None,
        filters: CleanupFilters | None = None,
        dry_run: bool = False,
    ) -> CleanupResult:
        result = CleanupResult(dry_run=dry_run)
        if exploration_id is not None:
            exploration = self.state.load(exploration_id)
            if not exploration.is_terminal and not (filters and filters.include_active):
                result.errors.append(
                    f"{exploration_id} is {exploration.status}; stop it first"
                )
                return result
            targets = [exploration]
        else:
            filters = filters or CleanupFilters()
            explorations = self.state.list_explorations(
                repository=self.provisioner.worktrees.repository.workdir
            )
            targets = [e for e in explorations if filters.matches(e)]

        for exploration in targets:
            if dry_run:
                self._plan(exploration, result)
            else:
                await self._clean(exploration, result)

        logger.info("Cleanup finished", explorations=len(result.explorations_cleaned),
                    worktrees=result.worktrees_removed, branches=result.branches_deleted,
                    sandboxes=result.sandboxes_stopped, errors=len(result.errors),
                    dry_run=dry_run)
        return result

    def _provisioner_for(self, exploration: Exploration) -> AttemptProvisioner:
        own = self.provisioner.worktrees.repository.workdir
        if exploration.repository.resolve() == own.resolve():
            return self.provisioner
        worktrees = WorktreeManager(GitRepository(exploration.repository))
        return AttemptProvisioner(worktrees, self.provisioner.runtime)

    def _plan(self, exploration: Exploration, result: CleanupResult) -> None:
        worktrees = self._provisioner_for(exploration).worktrees
        result.explorations_cleaned.append(exploration.id)
        for attempt in exploration.attempts:
            if attempt.container_id:
                result.sandboxes_stopped += 1
            if attempt.worktree_path.exists():
                result.worktrees_removed += 1
        result.branches_deleted += len(worktrees.list_exploration_branches(exploration.id))

    async def _clean(self, exploration: Exploration, result: CleanupResult) -> None:
        provisioner = self._provisioner_for(exploration)
        worktrees = provisioner.worktrees
        grace = exploration.settings.stop_grace_seconds
        errors_before = len(result.errors)

        with logger.span("Cleaning exploration", exploration_id=exploration.id):
            for attempt in exploration.attempts:
                report = await provisioner.release(exploration.id, attempt, grace)
                result.sandboxes_stopped += report.sandbox_stopped
                result.worktrees_removed += report.worktree_removed
                result.branches_deleted += report.branch_deleted
                result.errors.extend(report.errors)
                if attempt.container_id and report.sandbox_stopped:
                    self.state.update_attempt(exploration.id, attempt.index,
                                              container_id=None)

            # Branches left behind by an interrupted run
            try:
                leftovers = await asyncio.to_thread(
                    worktrees.list_exploration_branches, exploration.id
                )
                for branch in leftovers:
                    if await asyncio.to_thread(worktrees.delete_branch, branch, True):
                        result.branches_deleted += 1
            except ForkcatError as e:
                result.errors.append(f"{exploration.id} branches: {e}")

            if len(result.errors) > errors_before:
                logger.warn("Exploration only partly cleaned; keeping its record",
                            exploration_id=exploration.id)
                return
            try:
                self.state.delete(exploration.id)
            except (ForkcatError, OSError) as e:
                result.errors.append(f"{exploration.id} record: {e}")
                return
        result.explorations_cleaned.append(exploration.id)
