"""Merge and preview commands."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import CliPositionalArg

from forkcat.command.base import Command
from forkcat.merge.models import MergeOptions
from forkcat.merge.orchestrator import MergeOrchestrator


class PreviewCommand(Command):
    """Show what merging an attempt would do, without changing anything."""

    exploration_id: CliPositionalArg[str]
    attempt: CliPositionalArg[int]
    target: str | None = Field(default=None, description="Target branch")

    async def execute(self, state) -> int:
        preview = MergeOrchestrator(state.config).preview_merge(
            self.exploration_id, self.attempt, self.target
        )
        print(f"{preview.source_branch} -> {preview.target_branch}")
        print(f"Commits: {preview.commits_to_merge}, files: {len(preview.files_changed)}")
        for conflict in preview.conflicts:
            print(f"  CONFLICT ({conflict.conflict_type}) {conflict.file_path}")
        for error in preview.errors:
            print(f"  error: {error}")
        print("Can merge" if preview.can_merge else "Cannot merge cleanly")
        return 0 if preview.can_merge else 1


class MergeCommand(Command):
    """Merge an attempt's branch into a target branch, or open a PR.

    Options left unset fall back to config.merge.
    """

    exploration_id: CliPositionalArg[str]
    attempt: CliPositionalArg[int]
    strategy: Literal["direct", "squash", "rebase"] | None = None
    target: str | None = Field(default=None, description="Target branch")
    backup: bool | None = Field(default=None, description="Create a backup branch")
    auto_resolve: bool | None = Field(default=None, alias="auto-resolve")
    delete_worktree: bool | None = Field(default=None, alias="delete-worktree")
    create_pr: bool | None = Field(default=None, alias="create-pr")

    async def execute(self, state) -> int:
        options = MergeOptions.from_config(
            state.config.merge,
            strategy=self.strategy,
            target_branch=self.target,
            create_backup=self.backup,
            auto_resolve_conflicts=self.auto_resolve,
            delete_worktree=self.delete_worktree,
            create_pr=self.create_pr,
        )
        result = await MergeOrchestrator(state.config).merge_exploration(
            self.exploration_id, self.attempt, options
        )
        if result.success:
            if result.pr_url:
                print(f"Pull request: {result.pr_url}")
            else:
                print(f"Merged {result.source_branch} into {result.target_branch} "
                      f"({result.commits_merged} commits, {result.files_changed} files)")
            if result.backup_branch:
                print(f"Backup: {result.backup_branch}")
            return 0
        print(f"Merge failed: {result.error}")
        for conflict in result.conflicts:
            print(f"  CONFLICT ({conflict.conflict_type}) {conflict.file_path}")
        return 1
