"""Durable exploration records.

Layout under the state root, one directory per exploration::

    <root>/<id>/metadata.json      exploration + attempt records
    <root>/<id>/.lock              guards metadata.json
    <root>/<id>/shared/            collaboration pool and progress files
    <root>/<id>/worktrees/         attempt checkouts
    <root>/<id>/attempts/          copied result artifacts

Every mutation is a locked read-modify-write followed by an atomic
replace of metadata.json, and status changes are compare-and-swap:
a transition not allowed from the status found on disk is rejected.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from pathlib import Path

from pydantic import ValidationError

from forkcat.core.errors import (
    ExplorationNotFoundError,
    InvalidTransitionError,
    ResourcesStillAllocatedError,
)
from forkcat.core.log import logger
from forkcat.core.storage import locked, read_json, write_json_atomic
from forkcat.exploration.models import (
    ATTEMPT_TRANSITIONS,
    EXPLORATION_TRANSITIONS,
    TERMINAL_ATTEMPT,
    TERMINAL_EXPLORATION,
    Attempt,
    ExecutionResult,
    Exploration,
    ExplorationSummary,
    utcnow,
)

METADATA_FILE = "metadata.json"


class ExplorationStateManager:
    """Loads, saves and transitions exploration records."""

    def __init__(self, root: Path, lock_timeout: float = 60):
        self.root = Path(root)
        self.lock_timeout = lock_timeout

    # Paths

    def exploration_dir(self, exploration_id: str) -> Path:
        return self.root / exploration_id

    def shared_dir(self, exploration_id: str) -> Path:
        return self.exploration_dir(exploration_id) / "shared"

    def worktrees_dir(self, exploration_id: str) -> Path:
        return self.exploration_dir(exploration_id) / "worktrees"

    def attempt_dir(self, exploration_id: str, index: int) -> Path:
        return self.exploration_dir(exploration_id) / "attempts" / f"attempt-{index}"

    def _metadata(self, exploration_id: str) -> Path:
        return self.exploration_dir(exploration_id) / METADATA_FILE

    def _lock(self, exploration_id: str) -> Path:
        return self.exploration_dir(exploration_id) / ".lock"

    # Reads

    def exists(self, exploration_id: str) -> bool:
        return self._metadata(exploration_id).is_file()

    def load(self, exploration_id: str) -> Exploration:
        data = read_json(self._metadata(exploration_id))
        if data is None:
            raise ExplorationNotFoundError(exploration_id)
        return Exploration.model_validate(data)

    def list_explorations(
        self,
        status: str | Iterable[str] | None = None,
        active_only: bool = False,
        repository: Path | None = None,
    ) -> list[Exploration]:
        """Explorations newest first; unreadable records are skipped."""
        if not self.root.is_dir():
            return []
        statuses = {status} if isinstance(status, str) else (
            set(status) if status else None
        )

        explorations = []
        for entry in self.root.iterdir():
            if not (entry / METADATA_FILE).is_file():
                continue
            try:
                exploration = self.load(entry.name)
            except (OSError, ValueError, ValidationError) as e:
                logger.warn("Skipping unreadable exploration record",
                            exploration_id=entry.name, error=str(e))
                continue
            if statuses and exploration.status not in statuses:
                continue
            if active_only and exploration.is_terminal:
                continue
            if repository and exploration.repository.resolve() != Path(repository).resolve():
                continue
            explorations.append(exploration)

        explorations.sort(key=lambda e: e.created_at, reverse=True)
        return explorations

    def summaries(self, **filters) -> list[ExplorationSummary]:
        return [ExplorationSummary.of(e) for e in self.list_explorations(**filters)]

    # Writes

    def create(self, exploration: Exploration) -> Exploration:
        directory = self.exploration_dir(exploration.id)
        directory.mkdir(parents=True, exist_ok=True)
        with locked(self._lock(exploration.id), self.lock_timeout):
            if self.exists(exploration.id):
                raise FileExistsError(f"Exploration {exploration.id} already exists")
            self._write(exploration)
        logger.debug("Exploration record created", exploration_id=exploration.id)
        return exploration

    def update(
        self, exploration_id: str, mutate: Callable[[Exploration], None]
    ) -> Exploration:
        """Apply ``mutate`` to the stored record under the lock."""
        if not self.exists(exploration_id):
            raise ExplorationNotFoundError(exploration_id)
        with locked(self._lock(exploration_id), self.lock_timeout):
            exploration = self.load(exploration_id)
            mutate(exploration)
            self._write(exploration)
            return exploration

    def transition(
        self,
        exploration_id: str,
        to: str,
        expected: str | Iterable[str] | None = None,
        **fields,
    ) -> Exploration:
        """Compare-and-swap the exploration status.

        Raises:
            InvalidTransitionError: When the stored status is not in
                ``expected`` or cannot move to ``to``
        """
        def apply(exploration: Exploration):
            _check(f"exploration {exploration_id}", exploration.status, to,
                   expected, EXPLORATION_TRANSITIONS)
            exploration.status = to
            now = utcnow()
            if to == "running" and exploration.started_at is None:
                exploration.started_at = now
            if to in TERMINAL_EXPLORATION:
                exploration.completed_at = now
            for name, value in fields.items():
                setattr(exploration, name, value)

        exploration = self.update(exploration_id, apply)
        logger.debug("Exploration status changed",
                     exploration_id=exploration_id, status=to)
        return exploration

    def transition_attempt(
        self,
        exploration_id: str,
        index: int,
        to: str,
        expected: str | Iterable[str] | None = None,
        **fields,
    ) -> Attempt:
        """Compare-and-swap one attempt's status."""
        def apply(exploration: Exploration):
            attempt = exploration.attempt(index)
            _check(f"attempt {exploration_id}#{index}", attempt.status, to,
                   expected, ATTEMPT_TRANSITIONS)
            attempt.status = to
            now = utcnow()
            if to == "running" and attempt.started_at is None:
                attempt.started_at = now
            if to in TERMINAL_ATTEMPT:
                attempt.completed_at = now
            for name, value in fields.items():
                setattr(attempt, name, value)

        exploration = self.update(exploration_id, apply)
        logger.debug("Attempt status changed", exploration_id=exploration_id,
                     index=index, status=to, reason=fields.get("reason"))
        return exploration.attempt(index)

    def update_attempt(self, exploration_id: str, index: int, **fields) -> Attempt:
        """Set non-status attempt fields (progress, container id...)."""
        if "status" in fields:
            raise ValueError("use transition_attempt() to change status")

        def apply(exploration: Exploration):
            attempt = exploration.attempt(index)
            for name, value in fields.items():
                setattr(attempt, name, value)

        return self.update(exploration_id, apply).attempt(index)

    def record_results(
        self, exploration_id: str, results: ExecutionResult
    ) -> Exploration:
        def apply(exploration: Exploration):
            exploration.results = results
        return self.update(exploration_id, apply)

    def delete(self, exploration_id: str, force: bool = False) -> None:
        """Remove an exploration directory and everything in it.

        Raises:
            ResourcesStillAllocatedError: When an attempt still owns a
                sandbox or an existing worktree and ``force`` is unset
        """
        exploration = self.load(exploration_id)
        if not force:
            held = [
                a.index for a in exploration.attempts
                if a.container_id or a.worktree_path.exists()
            ]
            if held:
                raise ResourcesStillAllocatedError(
                    f"Exploration {exploration_id} still holds resources "
                    f"for attempts {held}; run cleanup first"
                )
        shutil.rmtree(self.exploration_dir(exploration_id))
        logger.info("Exploration record deleted", exploration_id=exploration_id)

    def _write(self, exploration: Exploration) -> None:
        write_json_atomic(
            self._metadata(exploration.id), exploration.model_dump(mode="json")
        )


def _check(subject, current, to, expected, graph) -> None:
    if expected is not None:
        allowed = {expected} if isinstance(expected, str) else set(expected)
        if current not in allowed:
            raise InvalidTransitionError(subject, current, to)
    if to not in graph[current]:
        raise InvalidTransitionError(subject, current, to)
