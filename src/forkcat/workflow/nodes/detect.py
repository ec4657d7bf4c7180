"""DetectConflicts node - dry-run the merge before touching anything."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcat.core.log import logger
from forkcat.merge.models import MergeResult
from forkcat.merge.preview import preview_branches
from forkcat.workflow.state import MergeRun


@dataclass
class DetectConflicts(BaseNode[MergeRun, None, MergeResult]):
    """Abort early on conflicts that will not be resolved."""

    async def run(
        self, ctx: GraphRunContext[MergeRun]
    ) -> CreateBackup | CreatePullRequest | End[MergeResult]:
        run = ctx.state
        options = run.options
        preview = preview_branches(run.repository, run.source_branch, run.target_branch)
        run.preview = preview
        run.conflicts = list(preview.conflicts)

        if preview.errors:
            return End(run.failure("; ".join(preview.errors)))

        if options.create_pr:
            if preview.conflicts:
                logger.warn(f"Opening a pull request with {len(preview.conflicts)} "
                            f"conflicting file(s)")
            from forkcat.workflow.nodes.pull_request import CreatePullRequest
            return CreatePullRequest()

        if preview.conflicts:
            paths = ", ".join(c.file_path for c in preview.conflicts)
            if not options.auto_resolve_conflicts:
                logger.warn("Merge has conflicts", files=paths)
                return End(run.failure(
                    f"Merge conflicts in {len(preview.conflicts)} file(s): {paths}"
                ))
            if options.strategy == "rebase":
                return End(run.failure(
                    "Conflicts cannot be auto-resolved with the rebase strategy: "
                    + paths
                ))
            unresolvable = [c for c in preview.conflicts if not c.auto_resolvable]
            if unresolvable:
                return End(run.failure(
                    "Conflicts that cannot be auto-resolved: "
                    + ", ".join(f"{c.file_path} ({c.conflict_type})" for c in unresolvable)
                ))
            logger.info(f"{len(preview.conflicts)} conflict(s) will be resolved "
                        f"with '{options.conflict_preference}'")

        run.target_tip = run.repository.rev_parse(run.target_branch)
        from forkcat.workflow.nodes.backup import CreateBackup
        return CreateBackup()
