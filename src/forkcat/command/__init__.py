"""CLI command modules for forkcat."""

from forkcat.command.compare import CompareCommand
from forkcat.command.control import CleanupCommand, StopCommand
from forkcat.command.listing import ListCommand, StatusCommand
from forkcat.command.merge import MergeCommand, PreviewCommand
from forkcat.command.start import StartCommand

__all__ = [
    "CleanupCommand",
    "CompareCommand",
    "ListCommand",
    "MergeCommand",
    "PreviewCommand",
    "StartCommand",
    "StatusCommand",
    "StopCommand",
]
