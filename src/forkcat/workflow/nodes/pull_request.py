"""CreatePullRequest node - publish the attempt instead of merging it."""

from __future__ import annotations

from dataclasses import dataclass

from pydantic_graph import BaseNode, End, GraphRunContext

from forkcat.core.errors import GitCommandError
from forkcat.core.log import logger
from forkcat.core.runner import Runner
from forkcat.git.repository import quote
from forkcat.merge.models import MergeResult
from forkcat.workflow.nodes.finalize import release_attempt_worktree
from forkcat.workflow.state import MergeRun


@dataclass
class CreatePullRequest(BaseNode[MergeRun, None, MergeResult]):
    """Push the attempt branch and open a PR with the gh CLI.

    The target branch is never touched, so there is no backup and
    nothing to roll back.
    """

    async def run(self, ctx: GraphRunContext[MergeRun]) -> End[MergeResult]:
        run = ctx.state
        options = run.options
        exploration = run.exploration
        attempt = exploration.attempt(run.attempt_index)
        source, target = run.source_branch, run.target_branch

        try:
            run.repository.push(options.remote, source)
        except GitCommandError as e:
            return End(run.failure(f"Push failed: {e}"))

        title = options.pr_title or f"[forkcat] {exploration.task.splitlines()[0][:72]}"
        body = options.pr_body or (
            f"Attempt {attempt.index} of exploration {exploration.id}"
            + (f" (strategy: {attempt.strategy})" if attempt.strategy else "")
            + f".\n\nTask:\n\n{exploration.task}\n"
        )
        result = Runner().execute(
            "gh pr create "
            f"--base {quote(target)} --head {quote(source)} "
            f"--title {quote(title)} --body {quote(body)}",
            cwd=run.repository.workdir,
            check=False,
        )
        if result.exited != 0:
            return End(run.failure(
                f"gh pr create failed: {(result.stderr or result.stdout).strip()}"
            ))

        urls = [line for line in result.stdout.splitlines() if line.startswith("http")]
        pr_url = urls[-1].strip() if urls else result.stdout.strip()

        def record(exploration):
            exploration.pr_url = pr_url
            exploration.merge_target_branch = target

        run.state.update(run.exploration_id, record)

        # The branch backs the pull request, so only the checkout goes
        if options.delete_worktree:
            release_attempt_worktree(run, delete_branch=False)

        logger.info(f"Pull request opened: {pr_url}")
        return End(MergeResult(
            success=True,
            strategy=options.strategy,
            source_branch=source,
            target_branch=target,
            commits_merged=run.preview.commits_to_merge,
            files_changed=len(run.preview.files_changed),
            conflicts=run.conflicts,
            pr_url=pr_url,
        ))
