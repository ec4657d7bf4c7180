"""List and status commands."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import CliPositionalArg

from forkcat.command.base import Command


class ListCommand(Command):
    """List explorations, newest first."""

    status: str | None = Field(
        default=None,
        description="Only explorations with this status",
    )
    active: bool = Field(default=False, description="Only pending or running")
    all_repos: bool = Field(
        default=False, alias="all-repos",
        description="Include explorations of other repositories",
    )

    async def execute(self, state) -> int:
        orchestrator = self.orchestrator(state)
        explorations = orchestrator.list_explorations(
            status=self.status,
            active_only=self.active,
            repository=None if self.all_repos else orchestrator.repository.workdir,
        )
        if not explorations:
            print("No explorations found")
            return 0
        for e in explorations:
            winner = e.winner_index if e.winner_index is not None else "-"
            done = sum(a.status == "completed" for a in e.attempts)
            print(f"{e.id}  {e.status:<9}  {e.mode:<10}  "
                  f"{done}/{e.branch_count} done  winner={winner}  {e.task[:50]}")
        return 0


class StatusCommand(Command):
    """Show one exploration and the state of its attempts."""

    exploration_id: CliPositionalArg[str]

    async def execute(self, state) -> int:
        status = self.orchestrator(state).get_status(self.exploration_id)
        e = status.exploration
        print(f"{e.id}: {e.status} ({e.mode}, {e.branch_count} attempts)")
        print(f"Task: {e.task}")
        for a in e.attempts:
            label = "skipped" if a.index in status.skipped else a.status
            line = (f"  #{a.index} {label:<9} {a.progress.percentage:5.1f}% "
                    f"{a.progress.current_stage}")
            if a.strategy:
                line += f" [{a.strategy}]"
            if a.reason and a.index not in status.skipped:
                line += f" ({a.reason})"
            print(line)
        stats = status.collaboration
        print(f"Insights: {stats.total_insights}, decisions: "
              f"{stats.pending_decisions} pending / {stats.resolved_decisions} resolved")
        if e.winner_index is not None:
            print(f"Winner: attempt {e.winner_index}")
        if e.merged_index is not None:
            print(f"Merged: attempt {e.merged_index} into {e.merge_target_branch}")
        return 0
