"""ResolveConflicts node - keep one side of every conflicted file."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, GraphRunContext

from forkcat.core.errors import GitCommandError
from forkcat.core.log import logger
from forkcat.merge.models import MergeResult
from forkcat.workflow.state import MergeRun


@dataclass
class ResolveConflicts(BaseNode[MergeRun, None, MergeResult]):
    """Best-effort resolution; anything left unresolved rolls back."""

    async def run(
        self, ctx: GraphRunContext[MergeRun]
    ) -> Finalize | Rollback:
        from forkcat.workflow.nodes.finalize import Finalize
        from forkcat.workflow.nodes.rollback import Rollback

        run = ctx.state
        repo = run.repository
        side = run.options.conflict_preference
        try:
            for path in repo.unmerged_files():
                repo.stage_side(path, side)
                logger.debug(f"Resolved {path} with {side}")
        except GitCommandError as e:
            return Rollback(error=f"Auto-resolution failed: {e}")

        remaining = repo.unmerged_files()
        if remaining:
            return Rollback(
                error="Could not auto-resolve: " + ", ".join(remaining)
            )
        return Finalize()
