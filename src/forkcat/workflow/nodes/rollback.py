"""Rollback node - put the repository back the way it was."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcat.core.errors import GitCommandError
from forkcat.core.log import logger
from forkcat.merge.models import MergeResult
from forkcat.workflow.state import MergeRun


@dataclass
class Rollback(BaseNode[MergeRun, None, MergeResult]):
    """Abort the merge, reset the target, restore the original branch."""

    error: str

    async def run(self, ctx: GraphRunContext[MergeRun]) -> End[MergeResult]:
        run = ctx.state
        repo = run.repository
        logger.warn(f"Rolling back merge of {run.source_branch}: {self.error}")

        error = self.error
        try:
            repo.abort_operation()
            if run.target_tip:
                repo.checkout(run.target_branch, force=True)
                repo.reset_hard(run.target_tip)
            if run.original_branch and run.original_branch != repo.current_branch():
                repo.checkout(run.original_branch)
        except GitCommandError as e:
            logger.error(f"Rollback incomplete: {e}")
            error += f" (rollback incomplete: {e})"
        else:
            logger.info(f"{run.target_branch} restored to {run.target_tip[:12]}"
                        if run.target_tip else "Nothing to restore")

        return End(run.failure(error))
