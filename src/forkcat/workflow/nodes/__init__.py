"""Workflow nodes for the merge-back graph."""

from forkcat.workflow.nodes.backup import CreateBackup
from forkcat.workflow.nodes.detect import DetectConflicts
from forkcat.workflow.nodes.execute import ExecuteMerge
from forkcat.workflow.nodes.finalize import Finalize
from forkcat.workflow.nodes.pull_request import CreatePullRequest
from forkcat.workflow.nodes.resolve import ResolveConflicts
from forkcat.workflow.nodes.rollback import Rollback
from forkcat.workflow.nodes.validate import ValidateMerge

__all__ = [
    "ValidateMerge",
    "DetectConflicts",
    "CreateBackup",
    "ExecuteMerge",
    "ResolveConflicts",
    "Finalize",
    "Rollback",
    "CreatePullRequest",
]
