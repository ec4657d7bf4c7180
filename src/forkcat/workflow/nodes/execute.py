"""ExecuteMerge node - apply the attempt branch to the target."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, GraphRunContext

from forkcat.core.errors import GitCommandError
from forkcat.core.log import logger
from forkcat.merge.models import MergeConflict, MergeResult
from forkcat.workflow.state import MergeRun


@dataclass
class ExecuteMerge(BaseNode[MergeRun, None, MergeResult]):
    """Merge, squash or rebase in the main working tree."""

    async def run(
        self, ctx: GraphRunContext[MergeRun]
    ) -> Finalize | ResolveConflicts | Rollback:
        from forkcat.workflow.nodes.finalize import Finalize
        from forkcat.workflow.nodes.resolve import ResolveConflicts
        from forkcat.workflow.nodes.rollback import Rollback

        run = ctx.state
        repo = run.repository
        source, target = run.source_branch, run.target_branch
        run.mutated = True

        try:
            if run.options.strategy == "rebase":
                # The attempt branch stays checked out in its worktree,
                # so replay its commits on a detached HEAD instead
                repo.checkout(source, detach=True)
                repo.rebase(target)
                rebased = repo.rev_parse("HEAD")
                repo.checkout(target)
                repo.merge(rebased, ff_only=True)
                return Finalize()

            repo.checkout(target)
            result = repo.merge(
                source,
                squash=run.options.strategy == "squash",
                message=f"Merge {source} into {target}",
            )
        except GitCommandError as e:
            return Rollback(error=str(e))

        if result.exited == 0:
            return Finalize()

        unmerged = repo.unmerged_files()
        run.conflicts = [
            MergeConflict(file_path=path, conflict_type=kind)
            for path, kind in unmerged.items()
        ]
        if not run.options.auto_resolve_conflicts:
            return Rollback(error=f"Merge stopped on {len(unmerged)} conflict(s)")
        logger.info(f"Resolving {len(unmerged)} conflicted file(s)")
        return ResolveConflicts()
