"""Persisted records of explorations and their attempts."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from forkcat.core.config import ExplorationSettings

ExplorationStatus = Literal["pending", "running", "completed", "failed", "stopped"]
AttemptStatus = Literal["pending", "running", "completed", "failed"]

TERMINAL_EXPLORATION = {"completed", "failed", "stopped"}
TERMINAL_ATTEMPT = {"completed", "failed"}

# Forward-only status graphs; terminal states have no successors.
EXPLORATION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "failed", "stopped"},
    "running": {"completed", "failed", "stopped"},
    "completed": set(),
    "failed": set(),
    "stopped": set(),
}
ATTEMPT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"running", "failed"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_exploration_id() -> str:
    return f"exp-{utcnow():%Y%m%d-%H%M%S}-{secrets.token_hex(3)}"


def branch_name(exploration_id: str, index: int) -> str:
    return f"exploration/{exploration_id}/branch-{index}"


def sandbox_name(exploration_id: str, index: int) -> str:
    return f"forkcat-{exploration_id}-attempt-{index}"


class AttemptProgress(BaseModel):
    """Last progress report of a task-runner."""

    current_stage: str = "pending"
    percentage: float = Field(default=0, ge=0, le=100)
    errors: list[str] = Field(default_factory=list)
    stages_completed: list[str] = Field(default_factory=list)
    updated_at: datetime | None = None


class Attempt(BaseModel):
    """One isolated unit of work: a worktree, a branch and a sandbox."""

    index: int = Field(ge=1)
    branch_name: str
    worktree_path: Path
    strategy: str | None = None
    status: AttemptStatus = "pending"
    reason: str | None = Field(
        default=None,
        description="Why the attempt failed or was skipped",
    )
    container_id: str | None = None
    port: int | None = None
    exit_code: int | None = None
    progress: AttemptProgress = Field(default_factory=AttemptProgress)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ATTEMPT

    @property
    def duration_seconds(self) -> float | None:
        if not self.started_at:
            return None
        end = self.completed_at or utcnow()
        return (end - self.started_at).total_seconds()


class AttemptOutcome(BaseModel):
    index: int
    status: AttemptStatus
    reason: str | None = None
    duration_seconds: float | None = None


class ExecutionResult(BaseModel):
    """Aggregate outcome of running every attempt."""

    mode: Literal["parallel", "sequential"]
    total_branches: int
    completed_branches: int
    duration_ms: int
    winner_index: int | None = None
    attempts: list[AttemptOutcome] = Field(default_factory=list)


class Exploration(BaseModel):
    """One exploration run and all of its attempts."""

    id: str
    task: str
    repository: Path
    settings: ExplorationSettings
    status: ExplorationStatus = "pending"
    attempts: list[Attempt] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    results: ExecutionResult | None = None
    error: str | None = None

    merged_index: int | None = None
    merged_at: datetime | None = None
    merge_target_branch: str | None = None
    merge_backup_branch: str | None = None
    merge_strategy: str | None = None
    pr_url: str | None = None

    @property
    def mode(self) -> str:
        return self.settings.mode

    @property
    def branch_count(self) -> int:
        return self.settings.branches

    @property
    def strategy_tags(self) -> list[str]:
        return list(self.settings.strategies or [])

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXPLORATION

    @property
    def winner_index(self) -> int | None:
        return self.results.winner_index if self.results else None

    def attempt(self, index: int) -> Attempt:
        for attempt in self.attempts:
            if attempt.index == index:
                return attempt
        raise KeyError(f"{self.id} has no attempt {index}")


class ExplorationSummary(BaseModel):
    """One row of ``forkcat list``."""

    id: str
    task: str
    status: ExplorationStatus
    mode: str
    branches: int
    completed: int
    failed: int
    created_at: datetime
    winner_index: int | None = None
    merged_index: int | None = None

    @classmethod
    def of(cls, exploration: Exploration) -> ExplorationSummary:
        return cls(
            id=exploration.id,
            task=exploration.task,
            status=exploration.status,
            mode=exploration.mode,
            branches=exploration.branch_count,
            completed=sum(a.status == "completed" for a in exploration.attempts),
            failed=sum(a.status == "failed" for a in exploration.attempts),
            created_at=exploration.created_at,
            winner_index=exploration.winner_index,
            merged_index=exploration.merged_index,
        )
