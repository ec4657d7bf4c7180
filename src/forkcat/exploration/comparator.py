"""Side-by-side comparison of an exploration's attempts."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from forkcat.core.errors import ForkcatError
from forkcat.core.log import logger
from forkcat.core.storage import write_json_atomic
from forkcat.exploration.collaboration import CollaborationCoordinator
from forkcat.exploration.models import Attempt, Exploration, utcnow
from forkcat.exploration.scoring import (
    OverallScorePolicy,
    ScoringPolicy,
    select_winner,
)
from forkcat.exploration.state import ExplorationStateManager
from forkcat.git.repository import GitRepository

REPORT_JSON = "comparison-report.json"
REPORT_MARKDOWN = "comparison-report.md"

# (minimum overall score, verdict), best first
RECOMMENDATION_THRESHOLDS = (
    (90, "Excellent result; strongly recommended for merge."),
    (75, "Good result; recommended after a quick review."),
    (60, "Acceptable result; review carefully before merging."),
    (0, "Low score; not recommended without further work."),
)


class TestSummary(BaseModel):
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    coverage: float | None = None


class AttemptArtifact(BaseModel):
    """Result file a task-runner leaves in its worktree."""

    model_config = ConfigDict(extra="allow")

    score: float | None = Field(default=None, ge=0, le=100)
    summary: str | None = None
    tests: TestSummary | None = None


class AttemptMetrics(BaseModel):
    """One row of the comparison table."""

    index: int
    strategy: str | None = None
    status: str
    reason: str | None = None
    has_result: bool = False
    progress: float = 0
    duration_seconds: float | None = None
    errors: int = 0
    insights_published: int = 0
    decisions_participated: int = 0
    files_changed: int | None = None
    lines_added: int | None = None
    lines_removed: int | None = None
    tests: TestSummary | None = None
    declared_score: float | None = None
    summary: str | None = None
    overall_score: float = 0


class ComparisonReport(BaseModel):
    exploration_id: str
    task: str
    mode: str
    generated_at: datetime = Field(default_factory=utcnow)
    metrics: list[AttemptMetrics]
    summary: str
    recommendation: str
    winner_index: int | None = None


def overall_score(attempt: Attempt, metrics: AttemptMetrics) -> float:
    """0-100 blend of status, progress, tests, collaboration and errors."""
    score = {"completed": 40, "running": 20}.get(attempt.status, 0)
    score += metrics.progress / 100 * 20
    tests = metrics.tests
    if tests and tests.total:
        score += tests.passed / tests.total * 15
        if tests.coverage:
            score += tests.coverage / 100 * 5
    score += min(10, metrics.insights_published * 2
                 + metrics.decisions_participated * 3)
    score -= min(10, metrics.errors * 2)
    return round(max(0.0, min(100.0, score)), 1)


class ResultComparator:
    """Builds comparison reports from attempt records and artifacts."""

    def __init__(
        self,
        state: ExplorationStateManager,
        repository: GitRepository | None = None,
        policy: ScoringPolicy | None = None,
    ):
        self.state = state
        self.repository = repository
        self.policy = policy or OverallScorePolicy()

    def artifact_path(self, exploration: Exploration, attempt: Attempt) -> Path:
        """Copied artifact if one was kept, else the one in the worktree."""
        copied = self.state.attempt_dir(exploration.id, attempt.index) / "result.json"
        if copied.exists():
            return copied
        return attempt.worktree_path / exploration.settings.artifact_path

    def read_artifact(self, exploration: Exploration, attempt: Attempt) -> AttemptArtifact | None:
        path = self.artifact_path(exploration, attempt)
        if not path.is_file():
            return None
        try:
            return AttemptArtifact.model_validate(json.loads(path.read_text()))
        except (OSError, ValueError, ValidationError) as e:
            logger.warn("Unreadable result artifact", path=str(path), error=str(e))
            return None

    def collect_metrics(self, exploration: Exploration) -> list[AttemptMetrics]:
        collaboration = CollaborationCoordinator(self.state.shared_dir(exploration.id))
        rows = []
        for attempt in exploration.attempts:
            author = collaboration.author_stats(attempt.index)
            metrics = AttemptMetrics(
                index=attempt.index,
                strategy=attempt.strategy,
                status=attempt.status,
                reason=attempt.reason,
                progress=attempt.progress.percentage,
                duration_seconds=attempt.duration_seconds,
                errors=len(attempt.progress.errors),
                insights_published=author.insights_published,
                decisions_participated=author.decisions_participated,
            )
            # Only completed attempts have results worth reading
            if attempt.status == "completed":
                artifact = self.read_artifact(exploration, attempt)
                if artifact is not None:
                    metrics.has_result = True
                    metrics.tests = artifact.tests
                    metrics.declared_score = artifact.score
                    metrics.summary = artifact.summary
                self._add_git_stats(exploration, attempt, metrics)
            metrics.overall_score = overall_score(attempt, metrics)
            rows.append(metrics)
        return rows

    def _add_git_stats(self, exploration, attempt, metrics) -> None:
        if self.repository is None:
            return
        try:
            if not self.repository.branch_exists(attempt.branch_name):
                return
            base = exploration.settings.base_ref
            if base == "HEAD":
                base = self.repository.merge_base("HEAD", attempt.branch_name)
            files, added, removed = self.repository.diff_shortstat(
                base, attempt.branch_name
            )
        except ForkcatError as e:
            logger.debug("No git stats for attempt", index=attempt.index, error=str(e))
            return
        metrics.files_changed = files
        metrics.lines_added = added
        metrics.lines_removed = removed

    def generate_comparison_report(
        self, exploration: Exploration, winner_index: int | None = None
    ) -> ComparisonReport:
        metrics = self.collect_metrics(exploration)
        if winner_index is None:
            winner_index = exploration.winner_index
        if winner_index is None:
            winner_index = select_winner(metrics, self.policy)
        return ComparisonReport(
            exploration_id=exploration.id,
            task=exploration.task,
            mode=exploration.mode,
            metrics=metrics,
            summary=self._summary(metrics, winner_index),
            recommendation=self._recommendation(metrics, winner_index),
            winner_index=winner_index,
        )

    def _summary(self, metrics: list[AttemptMetrics], winner_index: int | None) -> str:
        completed = sum(m.status == "completed" for m in metrics)
        failed = [m for m in metrics if m.status == "failed"]
        lines = [f"{completed}/{len(metrics)} attempts completed."]
        if failed:
            lines.append("Failed: " + ", ".join(
                f"#{m.index} ({m.reason or 'unknown'})" for m in failed
            ))
        winner = next((m for m in metrics if m.index == winner_index), None)
        if winner:
            lines.append(
                f"Winner: attempt {winner.index}"
                + (f" ({winner.strategy})" if winner.strategy else "")
                + f" with score {winner.overall_score:.1f}/100."
            )
            if winner.tests and winner.tests.total:
                lines.append(
                    f"Tests: {winner.tests.passed}/{winner.tests.total} passed"
                    + (f", {winner.tests.coverage:.1f}% coverage"
                       if winner.tests.coverage is not None else "")
                )
            if winner.summary:
                lines.append(winner.summary)
        return "\n".join(lines)

    def _recommendation(self, metrics: list[AttemptMetrics], winner_index: int | None) -> str:
        winner = next((m for m in metrics if m.index == winner_index), None)
        if winner is None:
            return ("No attempt completed. Review the failures and re-run "
                    "with adjusted strategies.")
        verdict = next(text for threshold, text in RECOMMENDATION_THRESHOLDS
                       if winner.overall_score >= threshold)
        text = f"Merge attempt {winner.index}. {verdict}"
        if winner.errors > 5:
            text += f" {winner.errors} errors were reported along the way."
        if winner.tests and winner.tests.failed:
            text += f" {winner.tests.failed} tests are failing."
        return text

    def generate_comparison_table(self, metrics: list[AttemptMetrics]) -> str:
        headers = ("#", "Strategy", "Status", "Progress", "Score", "Tests", "Result")
        rows = []
        for m in metrics:
            tests = f"{m.tests.passed}/{m.tests.total}" if m.tests and m.tests.total else "n/a"
            rows.append((
                str(m.index),
                (m.strategy or "-")[:16],
                m.status,
                f"{m.progress:.0f}%",
                f"{m.overall_score:.1f}",
                tests,
                "yes" if m.has_result else "no result",
            ))
        widths = [max(len(h), *(len(r[i]) for r in rows)) if rows else len(h)
                  for i, h in enumerate(headers)]

        def line(left, fill, sep, right):
            return left + sep.join(fill * (w + 2) for w in widths) + right

        def row(cells):
            return "│" + "│".join(f" {c:<{w}} " for c, w in zip(cells, widths)) + "│"

        out = [line("┌", "─", "┬", "┐"), row(headers), line("├", "─", "┼", "┤")]
        out += [row(r) for r in rows]
        out.append(line("└", "─", "┴", "┘"))
        return "\n".join(out)

    def to_markdown(self, report: ComparisonReport) -> str:
        lines = [
            "# Exploration comparison",
            "",
            f"- **Exploration**: {report.exploration_id}",
            f"- **Task**: {report.task}",
            f"- **Mode**: {report.mode}",
            f"- **Winner**: {report.winner_index or 'none'}",
            "",
            "| # | Strategy | Status | Progress | Score | Tests | Files | +/- | Insights |",
            "|---|---|---|---|---|---|---|---|---|",
        ]
        for m in report.metrics:
            tests = f"{m.tests.passed}/{m.tests.total}" if m.tests and m.tests.total else "n/a"
            churn = (f"+{m.lines_added}/-{m.lines_removed}"
                     if m.lines_added is not None else "n/a")
            lines.append(
                f"| {m.index} | {m.strategy or '-'} | {m.status} | "
                f"{m.progress:.0f}% | {m.overall_score:.1f} | {tests} | "
                f"{m.files_changed if m.files_changed is not None else 'n/a'} | "
                f"{churn} | {m.insights_published} |"
            )
        lines += ["", "## Summary", "", report.summary, "",
                  "## Recommendation", "", report.recommendation, ""]
        return "\n".join(lines)

    def write_report(self, report: ComparisonReport) -> Path:
        """Write JSON and Markdown copies next to the exploration record."""
        directory = self.state.exploration_dir(report.exploration_id)
        write_json_atomic(directory / REPORT_JSON, report.model_dump(mode="json"))
        (directory / REPORT_MARKDOWN).write_text(self.to_markdown(report))
        logger.debug("Comparison report written", path=str(directory / REPORT_JSON))
        return directory / REPORT_JSON
