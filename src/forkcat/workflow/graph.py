"""Graph workflow definition."""

from pydantic_graph import Graph

from forkcat.core.log import logger
from forkcat.workflow.state import MergeRun


def create_merge_workflow():
    """Create the merge-back workflow graph.

    ValidateMerge → DetectConflicts →
        CreatePullRequest, or
        CreateBackup → ExecuteMerge → [ResolveConflicts] → Finalize
    Any failure after the first mutation routes through Rollback.

    Returns:
        Graph workflow with MergeRun as state_type
    """
    logger.debug("Building merge workflow graph")

    # Import nodes (lazy to avoid circular imports)
    from forkcat.workflow.nodes.backup import CreateBackup
    from forkcat.workflow.nodes.detect import DetectConflicts
    from forkcat.workflow.nodes.execute import ExecuteMerge
    from forkcat.workflow.nodes.finalize import Finalize
    from forkcat.workflow.nodes.pull_request import CreatePullRequest
    from forkcat.workflow.nodes.resolve import ResolveConflicts
    from forkcat.workflow.nodes.rollback import Rollback
    from forkcat.workflow.nodes.validate import ValidateMerge

    workflow = Graph(
        nodes=(
            ValidateMerge,
            DetectConflicts,
            CreateBackup,
            ExecuteMerge,
            ResolveConflicts,
            Finalize,
            Rollback,
            CreatePullRequest,
        ),
        state_type=MergeRun,
    )

    return workflow
