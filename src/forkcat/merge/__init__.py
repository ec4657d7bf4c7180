"""Merge-back of exploration attempts."""

from forkcat.merge.models import (
    MergeConflict,
    MergeOptions,
    MergePreview,
    MergeResult,
)
from forkcat.merge.orchestrator import MergeOrchestrator

__all__ = [
    "MergeConflict",
    "MergeOptions",
    "MergeOrchestrator",
    "MergePreview",
    "MergeResult",
]
