"""Finalize node - commit, record the merge and release the attempt."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcat.core.errors import ForkcatError, GitCommandError
from forkcat.core.log import logger
from forkcat.exploration.models import utcnow
from forkcat.merge.models import MergeResult
from forkcat.workflow.state import MergeRun


def release_attempt_worktree(run: MergeRun, delete_branch: bool) -> None:
    """Drop the merged attempt's worktree, and optionally its branch.

    Failures are logged; the merge itself already succeeded.
    """
    attempt = run.exploration.attempt(run.attempt_index)
    try:
        run.worktrees.remove_worktree(attempt.worktree_path, force=True)
        if delete_branch:
            run.worktrees.delete_branch(attempt.branch_name, force=True)
    except (ForkcatError, OSError) as e:
        logger.warn(f"Could not release attempt {attempt.index} worktree: {e}")


@dataclass
class Finalize(BaseNode[MergeRun, None, MergeResult]):
    """Complete the merge and record it on the exploration."""

    async def run(
        self, ctx: GraphRunContext[MergeRun]
    ) -> Rollback | End[MergeResult]:
        run = ctx.state
        repo = run.repository
        options = run.options
        source, target = run.source_branch, run.target_branch

        try:
            if options.strategy == "squash":
                repo.commit(
                    f"Squash {source} into {target}\n\n{run.exploration.task}"
                )
            elif repo.operation_in_progress() == "merge":
                repo.commit(f"Merge {source} into {target}")
            merge_commit = repo.rev_parse("HEAD")
            files_changed = len(repo.changed_files(run.target_tip, merge_commit))
            if run.original_branch and run.original_branch != target:
                repo.checkout(run.original_branch)
        except GitCommandError as e:
            from forkcat.workflow.nodes.rollback import Rollback
            return Rollback(error=str(e))

        def record(exploration):
            exploration.merged_index = run.attempt_index
            exploration.merged_at = utcnow()
            exploration.merge_target_branch = target
            exploration.merge_backup_branch = run.backup_branch
            exploration.merge_strategy = options.strategy

        run.state.update(run.exploration_id, record)

        if options.delete_worktree:
            release_attempt_worktree(run, delete_branch=True)

        logger.info(f"Merged {source} into {target} at {merge_commit[:12]}")
        return End(MergeResult(
            success=True,
            strategy=options.strategy,
            source_branch=source,
            target_branch=target,
            backup_branch=run.backup_branch,
            merge_commit=merge_commit,
            commits_merged=run.preview.commits_to_merge,
            files_changed=files_changed,
            conflicts=run.conflicts,
        ))
