"""Stop and cleanup commands."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import CliPositionalArg

from forkcat.command.base import Command
from forkcat.exploration.cleanup import CleanupFilters


class StopCommand(Command):
    """Cancel a running exploration and stop its sandboxes."""

    exploration_id: CliPositionalArg[str]

    async def execute(self, state) -> int:
        exploration = await self.orchestrator(state).stop_exploration(self.exploration_id)
        print(f"{exploration.id}: {exploration.status}")
        return 0


class CleanupCommand(Command):
    """Release worktrees, branches and sandboxes of explorations.

    Backup branches created by merges are never deleted.
    """

    id: str | None = Field(default=None, description="One exploration to clean")
    all: bool = Field(default=False, description="Every finished exploration")
    failed_only: bool = Field(default=False, alias="failed-only")
    older_than_hours: float | None = Field(default=None, alias="older-than-hours")
    include_active: bool = Field(default=False, alias="include-active")
    dry_run: bool = Field(default=False, alias="dry-run")

    async def execute(self, state) -> int:
        filters = CleanupFilters(
            all=self.all,
            failed_only=self.failed_only,
            older_than_hours=self.older_than_hours,
            include_active=self.include_active,
        )
        if self.id is None and not (self.all or self.failed_only or self.older_than_hours):
            print("Nothing selected; pass --id, --all, --failed-only or --older-than-hours")
            return 1

        result = await self.orchestrator(state).cleanup(self.id, filters, self.dry_run)
        verb = "Would clean" if result.dry_run else "Cleaned"
        print(f"{verb} {len(result.explorations_cleaned)} exploration(s): "
              f"{result.worktrees_removed} worktrees, {result.branches_deleted} branches, "
              f"{result.sandboxes_stopped} sandboxes")
        for error in result.errors:
            print(f"  error: {error}")
        return 1 if result.errors else 0
