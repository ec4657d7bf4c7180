"""ValidateMerge node - check the attempt and repository can be merged."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcat.core.log import logger
from forkcat.merge.models import MergeResult
from forkcat.workflow.state import MergeRun


@dataclass
class ValidateMerge(BaseNode[MergeRun, None, MergeResult]):
    """Refuse merges of unfinished attempts or into a dirty tree."""

    async def run(
        self, ctx: GraphRunContext[MergeRun]
    ) -> DetectConflicts | End[MergeResult]:
        """Load the exploration and check every merge precondition.

        Returns:
            DetectConflicts: All preconditions hold
            End[MergeResult]: Failed result listing every violation
        """
        run = ctx.state
        repo = run.repository
        exploration = run.state.load(run.exploration_id)
        run.exploration = exploration

        try:
            attempt = exploration.attempt(run.attempt_index)
        except KeyError:
            return End(run.failure(
                f"Exploration {exploration.id} has no attempt {run.attempt_index}"
            ))

        run.source_branch = attempt.branch_name
        run.original_branch = repo.current_branch()
        run.target_branch = run.options.target_branch or run.original_branch

        errors = []
        if attempt.status != "completed":
            errors.append(
                f"Attempt {attempt.index} is {attempt.status}; only completed "
                f"attempts can be merged"
            )
        if exploration.merged_index is not None:
            errors.append(
                f"Attempt {exploration.merged_index} of {exploration.id} "
                f"was already merged"
            )
        if not repo.branch_exists(attempt.branch_name):
            errors.append(f"Branch {attempt.branch_name} does not exist")
        if run.target_branch is None:
            errors.append("HEAD is detached; pass a target branch")
        elif not repo.branch_exists(run.target_branch):
            errors.append(f"Target branch {run.target_branch} does not exist")
        # PR mode never touches the main working tree
        if not run.options.create_pr:
            operation = repo.operation_in_progress()
            if operation:
                errors.append(f"A {operation} is in progress in {repo.workdir}")
            elif not repo.is_clean():
                errors.append("Main working tree has uncommitted changes")

        if errors:
            for error in errors:
                logger.warn("Merge precondition failed", error=error)
            return End(run.failure("; ".join(errors)))

        logger.info(f"Merging attempt {attempt.index} of {exploration.id} "
                    f"into {run.target_branch} ({run.options.strategy})")
        from forkcat.workflow.nodes.detect import DetectConflicts
        return DetectConflicts()
