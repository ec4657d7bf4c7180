"""Winner selection policies for parallel explorations.

A policy maps one attempt's metrics row to a number; the winner is the
completed attempt with the highest number, ties going to the lowest
index.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from forkcat.exploration.comparator import AttemptMetrics


class ScoringPolicy(Protocol):
    name: str

    def score(self, metrics: AttemptMetrics) -> float:
        ...


class OverallScorePolicy:
    """Comparator's 0-100 score built from observable outcomes."""

    name = "overall"

    def score(self, metrics: AttemptMetrics) -> float:
        return metrics.overall_score


class DeclaredScorePolicy:
    """Score the task-runner declared in its artifact.

    Attempts that declared nothing fall back to the overall score.
    """

    name = "declared"

    def score(self, metrics: AttemptMetrics) -> float:
        if metrics.declared_score is not None:
            return metrics.declared_score
        return metrics.overall_score


POLICIES: dict[str, type] = {
    OverallScorePolicy.name: OverallScorePolicy,
    DeclaredScorePolicy.name: DeclaredScorePolicy,
}


def policy_for(name: str) -> ScoringPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(f"Unknown winner policy: {name}") from None


def select_winner(
    metrics: Iterable[AttemptMetrics], policy: ScoringPolicy
) -> int | None:
    """Index of the best completed attempt, or None if none completed."""
    completed = [m for m in metrics if m.status == "completed"]
    if not completed:
        return None
    best = max(completed, key=lambda m: (policy.score(m), -m.index))
    return best.index
