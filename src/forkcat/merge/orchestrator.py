"""Merge-back of a chosen attempt into a target branch."""

from __future__ import annotations

import asyncio

import portalocker

from forkcat.core.config import Config
from forkcat.core.errors import MergeError
from forkcat.core.log import logger
from forkcat.core.storage import async_locked
from forkcat.exploration.state import ExplorationStateManager
from forkcat.exploration.worktree import WorktreeManager
from forkcat.git.repository import GitRepository
from forkcat.merge.models import MergeOptions, MergePreview, MergeResult
from forkcat.merge.preview import preview_branches

MERGE_LOCK = "merge.lock"


class MergeOrchestrator:
    """Previews and performs merges; the only writer of target branches.

    Merges of one exploration are serialized by an asyncio lock within
    the process and a file lock across processes. A failed merge leaves
    the repository as it found it, apart from the backup branch.
    """

    def __init__(
        self,
        config: Config,
        state: ExplorationStateManager | None = None,
        repository: GitRepository | None = None,
        worktrees: WorktreeManager | None = None,
    ):
        self.config = config
        self.repository = repository or GitRepository(config.repo.workdir)
        self.state = state or ExplorationStateManager(config.repo.explorations_dir)
        self.worktrees = worktrees or WorktreeManager(self.repository)
        self._locks: dict[str, asyncio.Lock] = {}

    def preview_merge(
        self,
        exploration_id: str,
        attempt_index: int,
        target_branch: str | None = None,
    ) -> MergePreview:
        """Dry run; never mutates refs, index or working tree.

        Raises:
            ExplorationNotFoundError: If the exploration does not exist
            MergeError: If the attempt does not exist or no target
                branch can be determined
        """
        exploration = self.state.load(exploration_id)
        try:
            attempt = exploration.attempt(attempt_index)
        except KeyError as e:
            raise MergeError(str(e)) from e
        target = (
            target_branch
            or self.config.merge.target_branch
            or self.repository.current_branch()
        )
        if target is None:
            raise MergeError("HEAD is detached; pass a target branch")

        preview = preview_branches(self.repository, attempt.branch_name, target)
        if attempt.status != "completed":
            preview.errors.append(f"Attempt {attempt_index} is {attempt.status}")
            preview.can_merge = False
        logger.debug("Merge preview", exploration_id=exploration_id,
                     index=attempt_index, can_merge=preview.can_merge,
                     conflicts=len(preview.conflicts))
        return preview

    async def merge_exploration(
        self,
        exploration_id: str,
        attempt_index: int,
        options: MergeOptions | None = None,
    ) -> MergeResult:
        """Merge one attempt's branch according to ``options``.

        Returns a failed MergeResult for conflicts and unmet
        preconditions.

        Raises:
            ExplorationNotFoundError: If the exploration does not exist
            MergeError: If another merge holds the lock for too long
        """
        from forkcat.workflow.graph import create_merge_workflow
        from forkcat.workflow.nodes.validate import ValidateMerge
        from forkcat.workflow.state import MergeRun

        options = options or MergeOptions.from_config(self.config.merge)
        if not options.target_branch and self.config.merge.target_branch:
            options = options.model_copy(
                update={"target_branch": self.config.merge.target_branch}
            )
        if not self.state.exists(exploration_id):
            # Raises ExplorationNotFoundError
            self.state.load(exploration_id)

        run = MergeRun(
            exploration_id=exploration_id,
            attempt_index=attempt_index,
            options=options,
            repository=self.repository,
            state=self.state,
            worktrees=self.worktrees,
        )
        lock_path = self.state.exploration_dir(exploration_id) / MERGE_LOCK
        lock = self._locks.setdefault(exploration_id, asyncio.Lock())

        async with lock:
            try:
                async with async_locked(lock_path, self.config.merge.lock_timeout_seconds):
                    with logger.span("Merge", exploration_id=exploration_id,
                                     index=attempt_index, strategy=options.strategy):
                        workflow = create_merge_workflow()
                        async with workflow.iter(ValidateMerge(), state=run) as graph_run:
                            async for _node in graph_run:
                                pass
                        result = graph_run.result.output
            except portalocker.exceptions.LockException as e:
                raise MergeError(
                    f"Another merge of {exploration_id} is still running"
                ) from e

        if result.success:
            logger.info("Merge succeeded", exploration_id=exploration_id,
                        index=attempt_index, target=result.target_branch,
                        backup=result.backup_branch, pr_url=result.pr_url)
        else:
            logger.warn("Merge failed", exploration_id=exploration_id,
                        index=attempt_index, error=result.error)
        return result
