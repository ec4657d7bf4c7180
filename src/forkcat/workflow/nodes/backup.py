"""CreateBackup node - pin the target's pre-merge tip."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcat.core.errors import GitCommandError
from forkcat.core.log import logger
from forkcat.exploration.models import utcnow
from forkcat.merge.models import MergeResult
from forkcat.workflow.state import MergeRun


def backup_name(target_branch: str) -> str:
    return f"backup/{target_branch}-{utcnow():%Y%m%d-%H%M%S}"


@dataclass
class CreateBackup(BaseNode[MergeRun, None, MergeResult]):
    """Create ``backup/<target>-<timestamp>``; it is never deleted."""

    async def run(
        self, ctx: GraphRunContext[MergeRun]
    ) -> ExecuteMerge | End[MergeResult]:
        run = ctx.state
        if run.options.create_backup:
            repo = run.repository
            name = candidate = backup_name(run.target_branch)
            suffix = 1
            while repo.branch_exists(candidate):
                suffix += 1
                candidate = f"{name}-{suffix}"
            try:
                repo.create_branch(candidate, run.target_tip)
            except GitCommandError as e:
                return End(run.failure(f"Backup failed, nothing merged: {e}"))
            run.backup_branch = candidate
            logger.info(f"Backup branch {candidate} -> {run.target_tip[:12]}")

        from forkcat.workflow.nodes.execute import ExecuteMerge
        return ExecuteMerge()
