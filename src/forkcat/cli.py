#!/usr/bin/env python3
"""Forkcat CLI - parallel exploration of a task in isolated worktrees."""

import asyncio
import sys

from pydantic_settings import CliApp, CliSubCommand, get_subcommand

from forkcat.command import (
    CleanupCommand,
    CompareCommand,
    ListCommand,
    MergeCommand,
    PreviewCommand,
    StartCommand,
    StatusCommand,
    StopCommand,
)
from forkcat.core.config import State
from forkcat.core.log import logger


class CliState(State):
    """Run several isolated attempts at one task and merge the best.

    Each attempt gets its own git worktree, branch and sandbox
    (a docker container or a local process). Attempts can share
    insights and decisions through a file-backed pool, and the
    winner can be merged back or opened as a pull request.

    Configuration sources (in priority order):
    1. Command-line arguments (--config.exploration.branches 4)
    2. --include files, ./forkcat.yaml, user config, packaged defaults
    3. .env file
    4. Environment variables
       (FORKCAT_CONFIG__EXPLORATION__BRANCHES=4)

    The [JSON] options allow setting multiple values at once:
      --config.exploration '{"branches": 4, "mode": "sequential"}'
    """

    start: CliSubCommand[StartCommand]
    list: CliSubCommand[ListCommand]
    status: CliSubCommand[StatusCommand]
    compare: CliSubCommand[CompareCommand]
    preview: CliSubCommand[PreviewCommand]
    merge: CliSubCommand[MergeCommand]
    stop: CliSubCommand[StopCommand]
    cleanup: CliSubCommand[CleanupCommand]

    def cli_cmd(self):
        """Dispatch to the active subcommand, or show help if none
        provided."""
        subcommand = get_subcommand(self, is_required=False)

        if subcommand is None:
            CliApp.run(CliState, cli_args=['--help'])
            sys.exit(1)

        # Logger as context manager so sinks are flushed on exit
        with logger:
            exit_code = asyncio.run(subcommand.run_workflow(self))
            raise SystemExit(exit_code)


def main():
    """Main entry point for CLI."""
    CliApp.run(CliState)


if __name__ == "__main__":
    main()
