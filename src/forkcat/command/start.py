"""Start command - run a new exploration."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import CliPositionalArg

from forkcat.command.base import Command
from forkcat.core.log import logger
from forkcat.exploration.comparator import ResultComparator
from forkcat.exploration.orchestrator import ExplorationOrchestrator
from forkcat.sandbox import create_runtime


class StartCommand(Command):
    """Run N isolated attempts at TASK and pick a winner.

    Options left unset fall back to config.exploration.
    """

    task: CliPositionalArg[str] = Field(description="Task handed to every attempt")
    branches: int | None = Field(default=None, description="Number of attempts (1-10)")
    strategies: list[str] | None = Field(
        default=None, description="Strategy tag per attempt"
    )
    mode: Literal["parallel", "sequential"] | None = None
    timeout_minutes: float | None = Field(default=None, alias="timeout-minutes")
    auto_merge: bool | None = Field(default=None, alias="auto-merge")
    no_cleanup: bool | None = Field(default=None, alias="no-cleanup")
    runtime: Literal["docker", "process"] | None = None

    async def execute(self, state) -> int:
        overrides = {
            name: value
            for name, value in (
                ("branches", self.branches),
                ("strategies", self.strategies),
                ("mode", self.mode),
                ("timeout_minutes", self.timeout_minutes),
                ("auto_merge", self.auto_merge),
                ("no_cleanup", self.no_cleanup),
                ("runtime", self.runtime),
            )
            if value is not None
        }
        settings = state.config.exploration.model_copy(update=overrides)
        orchestrator = ExplorationOrchestrator(
            state.config, runtime=create_runtime(settings.runtime)
        )
        exploration = await orchestrator.start_exploration(self.task, settings)

        report = orchestrator.compare(exploration.id)
        print(ResultComparator(orchestrator.state).generate_comparison_table(report.metrics))
        print(report.summary)
        logger.info("Exploration finished", exploration_id=exploration.id,
                    status=exploration.status, winner=exploration.winner_index)
        return 0 if exploration.status == "completed" else 1
