"""Shared plumbing for CLI subcommands."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel

from forkcat.core.errors import ForkcatError
from forkcat.core.log import logger
from forkcat.exploration.orchestrator import ExplorationOrchestrator

if TYPE_CHECKING:
    from forkcat.core.config import State


class Command(BaseModel):
    """A subcommand; ``execute`` returns the process exit code."""

    async def run_workflow(self, state: State) -> int:
        """Run the command, mapping forkcat errors to exit code 1.

        Args:
            state: State instance

        Returns:
            Exit code (0=success)
        """
        try:
            return await self.execute(state)
        except ForkcatError as e:
            logger.error(str(e), command=type(self).__name__)
            return 1

    async def execute(self, state: State) -> int:
        raise NotImplementedError

    def orchestrator(self, state: State) -> ExplorationOrchestrator:
        return ExplorationOrchestrator(state.config)
