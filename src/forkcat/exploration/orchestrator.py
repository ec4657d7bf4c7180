"""Top-level exploration state machine.

An exploration moves ``pending -> running -> completed | failed |
stopped``; each attempt moves ``pending -> running -> completed |
failed``. Every change goes through the state manager as a
compare-and-swap write, so an orchestrator in one process and a stop
request from another never overwrite each other.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import time
from pathlib import Path

from pydantic import BaseModel, ValidationError

from forkcat.core.config import Config, ExplorationSettings
from forkcat.core.errors import (
    ConfigurationError,
    ForkcatError,
    InvalidTransitionError,
    ProvisioningError,
    SafetyValidationError,
    SandboxError,
)
from forkcat.core.log import logger
from forkcat.exploration.cleanup import CleanupFilters, CleanupResult, ExplorationCleaner
from forkcat.exploration.collaboration import CollaborationCoordinator, CollaborationStats
from forkcat.exploration.comparator import ComparisonReport, ResultComparator
from forkcat.exploration.models import (
    Attempt,
    AttemptOutcome,
    AttemptProgress,
    ExecutionResult,
    Exploration,
    branch_name,
    new_exploration_id,
    utcnow,
)
from forkcat.exploration.provisioner import AttemptProvisioner, progress_file
from forkcat.exploration.resources import PortAllocator
from forkcat.exploration.safety import SafetyReport, SafetyValidator
from forkcat.exploration.scoring import policy_for
from forkcat.exploration.state import ExplorationStateManager
from forkcat.exploration.worktree import WorktreeManager
from forkcat.git.repository import GitRepository
from forkcat.sandbox import SandboxRuntime, create_runtime


class ExplorationStatusReport(BaseModel):
    """Snapshot returned by ``get_status``."""

    exploration: Exploration
    collaboration: CollaborationStats
    running: list[int]
    pending: list[int]
    # Left pending because an earlier sequential attempt won
    skipped: list[int]


class ExplorationOrchestrator:
    """Runs N isolated attempts at one task and picks a winner."""

    def __init__(
        self,
        config: Config,
        runtime: SandboxRuntime | None = None,
        repository: GitRepository | None = None,
        state: ExplorationStateManager | None = None,
        ports: PortAllocator | None = None,
    ):
        self.config = config
        self.repository = repository or GitRepository(config.repo.workdir)
        self.state = state or ExplorationStateManager(config.repo.explorations_dir)
        self.runtime = runtime or create_runtime(config.exploration.runtime)
        self.worktrees = WorktreeManager(self.repository)
        self.provisioner = AttemptProvisioner(self.worktrees, self.runtime, ports)
        self.cleaner = ExplorationCleaner(self.state, self.provisioner)
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------

    def validate(self, settings: ExplorationSettings) -> SafetyReport:
        validator = SafetyValidator(
            self.repository,
            self.runtime,
            settings,
            self.config.safety,
            state_root=self.state.root,
        )
        return validator.validate(settings.branches)

    async def start_exploration(
        self, task: str, settings: ExplorationSettings | None = None
    ) -> Exploration:
        """Validate, create and run an exploration to its end.

        Raises:
            ConfigurationError: If the settings are invalid
            SafetyValidationError: If a pre-flight check failed; nothing
                has been allocated in that case
        """
        settings = _revalidate(settings or self.config.exploration)
        report = self.validate(settings)
        for warning in report.warnings:
            logger.warn("Safety warning", warning=warning)
        if not report.passed:
            raise SafetyValidationError(report)

        exploration = self.create_exploration(task, settings)
        return await self.run_exploration(exploration.id)

    def create_exploration(self, task: str, settings: ExplorationSettings) -> Exploration:
        """Persist a pending exploration with one record per attempt."""
        exploration_id = new_exploration_id()
        worktrees_dir = self.state.worktrees_dir(exploration_id)
        exploration = Exploration(
            id=exploration_id,
            task=task,
            repository=self.repository.workdir.resolve(),
            settings=settings,
            attempts=[
                Attempt(
                    index=index,
                    branch_name=branch_name(exploration_id, index),
                    worktree_path=worktrees_dir / f"attempt-{index}",
                    strategy=settings.strategy_for(index),
                )
                for index in range(1, settings.branches + 1)
            ],
        )
        self.state.create(exploration)
        CollaborationCoordinator(self.state.shared_dir(exploration_id)).initialize()
        logger.info("Exploration created", exploration_id=exploration_id,
                    branches=settings.branches, mode=settings.mode)
        return exploration

    async def run_exploration(self, exploration_id: str) -> Exploration:
        """Run a pending exploration and return its final record."""
        exploration = self.state.transition(exploration_id, "running", expected="pending")
        cancel = self._cancel_events.setdefault(exploration_id, asyncio.Event())
        started = time.monotonic()

        with logger.span("Exploration", exploration_id=exploration_id,
                         mode=exploration.mode, branches=exploration.branch_count):
            try:
                if exploration.mode == "sequential":
                    await self._run_sequential(exploration, cancel)
                else:
                    await self._run_parallel(exploration, cancel)
                exploration = await self._finish(exploration_id, started)
            except BaseException as e:
                await self._abort(exploration_id, e)
                raise
            finally:
                self._cancel_events.pop(exploration_id, None)

        logger.info("Exploration finished", exploration_id=exploration_id,
                    status=exploration.status, winner=exploration.winner_index)
        return exploration

    # ------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------

    async def _run_parallel(self, exploration: Exploration, cancel: asyncio.Event) -> None:
        tasks = {
            asyncio.create_task(
                self._run_attempt(exploration, attempt, cancel),
                name=f"{exploration.id}-attempt-{attempt.index}",
            ): attempt.index
            for attempt in exploration.attempts
        }
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    logger.debug("Attempt settled", exploration_id=exploration.id,
                                 index=tasks[task], status=task.result())
        except BaseException:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

    async def _run_sequential(self, exploration: Exploration, cancel: asyncio.Event) -> None:
        for attempt in exploration.attempts:
            if cancel.is_set() or self._stopped(exploration.id):
                return
            status = await self._run_attempt(exploration, attempt, cancel)
            if status != "completed":
                continue
            for later in exploration.attempts:
                if later.index > attempt.index:
                    self.state.update_attempt(exploration.id, later.index, reason="skipped")
            logger.info("Sequential exploration found a winner",
                        exploration_id=exploration.id, index=attempt.index)
            return

    # ------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------

    async def _run_attempt(
        self, exploration: Exploration, attempt: Attempt, cancel: asyncio.Event
    ) -> str:
        """Provision, supervise and settle one attempt.

        Returns the attempt's final status. Attempt-level failures are
        recorded on the attempt, never raised, so one crashing sandbox
        leaves its siblings running.
        """
        try:
            return await self._supervise_attempt(exploration, attempt, cancel)
        except Exception as e:
            logger.error("Attempt crashed", exploration_id=exploration.id,
                         index=attempt.index, error=repr(e))
            return self._settle(exploration.id, attempt.index, "failed",
                                expected=("pending", "running"), reason=f"sandbox: {e}")

    async def _supervise_attempt(
        self, exploration: Exploration, attempt: Attempt, cancel: asyncio.Event
    ) -> str:
        exploration_id = exploration.id
        index = attempt.index
        settings = exploration.settings
        shared_dir = self.state.shared_dir(exploration_id)

        try:
            provisioned = await self.provisioner.provision(exploration, attempt, shared_dir)
        except ProvisioningError as e:
            logger.warn("Attempt provisioning failed", exploration_id=exploration_id,
                        index=index, error=str(e))
            return self._settle(exploration_id, index, "failed", expected="pending",
                                reason=f"provisioning: {e}")

        try:
            attempt = self.state.transition_attempt(
                exploration_id, index, "running", expected="pending",
                container_id=provisioned.container_id,
                port=provisioned.port,
                progress=AttemptProgress(current_stage="starting", updated_at=utcnow()),
            )
        except InvalidTransitionError:
            # Stopped from elsewhere while the sandbox was starting
            await self.provisioner.runtime.stop(provisioned.handle, settings.stop_grace_seconds)
            self.state.update_attempt(exploration_id, index,
                                      container_id=provisioned.container_id)
            return self.state.load(exploration_id).attempt(index).status

        logger.info("Attempt running", exploration_id=exploration_id, index=index,
                    strategy=attempt.strategy, port=provisioned.port)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.timeout_minutes * 60
        waiter = asyncio.create_task(self.runtime.wait(provisioned.handle))
        reason = None
        try:
            while True:
                remaining = max(0.0, deadline - loop.time())
                done, _ = await asyncio.wait(
                    {waiter}, timeout=min(settings.poll_interval_seconds, remaining)
                )
                self._record_progress(exploration_id, attempt)
                if waiter in done:
                    break
                if cancel.is_set() or self._stopped(exploration_id):
                    reason = "cancelled"
                    break
                if loop.time() >= deadline:
                    reason = "timeout"
                    break
        except asyncio.CancelledError:
            await self._terminate(waiter, provisioned.handle, settings.stop_grace_seconds)
            self._settle(exploration_id, index, "failed", expected="running",
                         reason="cancelled")
            raise
        except Exception:
            await self._terminate(waiter, provisioned.handle, 0)
            raise

        if reason is not None:
            grace = 0 if reason == "timeout" else settings.stop_grace_seconds
            await self._terminate(waiter, provisioned.handle, grace)
            logger.warn("Attempt terminated", exploration_id=exploration_id,
                        index=index, reason=reason)
            return self._settle(exploration_id, index, "failed", expected="running",
                                reason=reason)

        try:
            exit_code = waiter.result()
        except SandboxError as e:
            return self._settle(exploration_id, index, "failed", expected="running",
                                reason=f"sandbox: {e}")

        self._record_progress(exploration_id, attempt)
        if exit_code != 0:
            logger.warn("Attempt failed", exploration_id=exploration_id,
                        index=index, exit_code=exit_code)
            return self._settle(exploration_id, index, "failed", expected="running",
                                reason=f"exit code {exit_code}", exit_code=exit_code)

        self._keep_artifact(exploration, attempt)
        logger.info("Attempt completed", exploration_id=exploration_id, index=index)
        return self._settle(exploration_id, index, "completed", expected="running",
                            exit_code=0)

    async def _terminate(self, waiter: asyncio.Task, handle, grace: float) -> None:
        await self.runtime.stop(handle, grace)
        waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError, SandboxError):
            await waiter

    def _settle(self, exploration_id: str, index: int, to: str,
                expected: str | tuple[str, ...], **fields) -> str:
        """Move an attempt to a terminal status unless someone beat us to it."""
        try:
            return self.state.transition_attempt(
                exploration_id, index, to, expected=expected, **fields
            ).status
        except InvalidTransitionError as e:
            logger.debug("Attempt already settled", exploration_id=exploration_id,
                         index=index, current=e.current)
            return e.current

    def _stopped(self, exploration_id: str) -> bool:
        return self.state.load(exploration_id).status == "stopped"

    def _record_progress(self, exploration_id: str, attempt: Attempt) -> None:
        """Copy the task-runner's progress file into the attempt record."""
        path = Path(progress_file(self.state.shared_dir(exploration_id), attempt.index))
        if not path.is_file():
            return
        try:
            report = json.loads(path.read_text())
            stage = str(report.get("current_stage", attempt.progress.current_stage))
            percentage = float(report.get("percentage", attempt.progress.percentage))
            errors = [str(e) for e in report.get("errors", [])]
        except (OSError, ValueError, AttributeError, TypeError) as e:
            logger.spew("Progress file not readable yet", path=str(path), error=str(e))
            return

        previous = attempt.progress
        percentage = max(0.0, min(100.0, percentage))
        if (stage, percentage, errors) == (
            previous.current_stage, previous.percentage, previous.errors
        ):
            return
        stages = list(previous.stages_completed)
        if stage != previous.current_stage and previous.current_stage not in stages:
            stages.append(previous.current_stage)
        attempt.progress = AttemptProgress(
            current_stage=stage,
            percentage=percentage,
            errors=errors,
            stages_completed=stages,
            updated_at=utcnow(),
        )
        self.state.update_attempt(exploration_id, attempt.index, progress=attempt.progress)
        logger.trace("Attempt progress", exploration_id=exploration_id,
                     index=attempt.index, stage=stage, percentage=percentage)

    def _keep_artifact(self, exploration: Exploration, attempt: Attempt) -> None:
        source = attempt.worktree_path / exploration.settings.artifact_path
        if not source.is_file():
            logger.debug("Attempt left no result artifact", index=attempt.index)
            return
        target = self.state.attempt_dir(exploration.id, attempt.index) / "result.json"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)

    # ------------------------------------------------------------
    # Finishing
    # ------------------------------------------------------------

    async def _finish(self, exploration_id: str, started: float) -> Exploration:
        exploration = self.state.load(exploration_id)
        comparator = ResultComparator(
            self.state, self.repository, policy_for(exploration.settings.winner_policy)
        )
        report = comparator.generate_comparison_report(exploration)
        winner = report.winner_index

        completed_at = [a.completed_at for a in exploration.attempts if a.completed_at]
        if completed_at and exploration.started_at:
            duration_ms = int((max(completed_at) - exploration.started_at).total_seconds() * 1000)
        else:
            duration_ms = int((time.monotonic() - started) * 1000)

        results = ExecutionResult(
            mode=exploration.mode,
            total_branches=exploration.branch_count,
            completed_branches=sum(a.status == "completed" for a in exploration.attempts),
            duration_ms=duration_ms,
            winner_index=winner,
            attempts=[
                AttemptOutcome(index=a.index, status=a.status, reason=a.reason,
                               duration_seconds=a.duration_seconds)
                for a in exploration.attempts
            ],
        )
        self.state.record_results(exploration_id, results)

        status = "completed" if winner is not None else "failed"
        try:
            exploration = self.state.transition(
                exploration_id, status, expected="running",
                error=None if winner is not None else "no attempt completed",
            )
        except InvalidTransitionError:
            exploration = self.state.load(exploration_id)
            logger.info("Exploration was stopped before it finished",
                        exploration_id=exploration_id)

        comparator.write_report(report)

        if exploration.settings.auto_merge and exploration.status == "completed":
            await self._auto_merge(exploration)

        if exploration.settings.no_cleanup:
            logger.info("Keeping worktrees and sandboxes", exploration_id=exploration_id)
        else:
            await self._release_after_run(exploration_id)
        return self.state.load(exploration_id)

    async def _auto_merge(self, exploration: Exploration) -> None:
        from forkcat.merge.models import MergeOptions
        from forkcat.merge.orchestrator import MergeOrchestrator

        merger = MergeOrchestrator(
            self.config, state=self.state, repository=self.repository,
            worktrees=self.worktrees,
        )
        try:
            result = await merger.merge_exploration(
                exploration.id, exploration.winner_index,
                MergeOptions.from_config(self.config.merge),
            )
        except ForkcatError as e:
            logger.error("Auto-merge failed", exploration_id=exploration.id, error=str(e))
            return
        if not result.success:
            logger.error("Auto-merge failed", exploration_id=exploration.id,
                         error=result.error, conflicts=len(result.conflicts))

    async def _abort(self, exploration_id: str, error: BaseException) -> None:
        """Settle an exploration whose run raised and stop its sandboxes.

        A cancelled run ends ``stopped``; anything else ends ``failed``
        with the error recorded. Sandboxes are stopped even under
        ``no_cleanup`` since nothing supervises them any more.
        """
        cancelled = isinstance(error, asyncio.CancelledError)
        logger.error("Exploration run aborted", exploration_id=exploration_id,
                     error=repr(error))
        try:
            self.state.transition(
                exploration_id, "stopped" if cancelled else "failed",
                expected="running",
                error=None if cancelled else f"run aborted: {error}",
            )
        except InvalidTransitionError as e:
            logger.debug("Exploration already settled", exploration_id=exploration_id,
                         current=e.current)

        exploration = self.state.load(exploration_id)
        for attempt in exploration.attempts:
            if not attempt.is_terminal:
                self._settle(exploration_id, attempt.index, "failed",
                             expected=attempt.status,
                             reason="cancelled" if cancelled else "run aborted")
        await self._release_after_run(exploration_id)

    async def _release_after_run(self, exploration_id: str) -> None:
        """Stop every sandbox; drop worktrees of attempts that did not complete."""
        exploration = self.state.load(exploration_id)
        grace = exploration.settings.stop_grace_seconds
        for attempt in exploration.attempts:
            report = await self.provisioner.release(
                exploration_id, attempt, grace,
                remove_worktree=attempt.status != "completed",
            )
            if attempt.container_id:
                self.state.update_attempt(exploration_id, attempt.index, container_id=None)
            if report.errors:
                logger.warn("Attempt cleanup incomplete", exploration_id=exploration_id,
                            index=attempt.index, errors=report.errors)

    # ------------------------------------------------------------
    # Control and queries
    # ------------------------------------------------------------

    async def stop_exploration(self, exploration_id: str) -> Exploration:
        """Cancel every non-terminal attempt and mark the exploration stopped.

        Works across processes: the stopped status is persisted first,
        and an orchestrator running the exploration elsewhere picks it
        up on its next poll.

        Raises:
            InvalidTransitionError: If the exploration already ended
        """
        self.state.transition(exploration_id, "stopped", expected=("pending", "running"))
        event = self._cancel_events.get(exploration_id)
        if event is not None:
            event.set()

        exploration = self.state.load(exploration_id)
        for attempt in exploration.attempts:
            if attempt.is_terminal:
                continue
            self._settle(exploration_id, attempt.index, "failed",
                         expected=attempt.status, reason="cancelled")
            await self.provisioner.release_sandbox(
                exploration_id, attempt, exploration.settings.stop_grace_seconds
            )

        logger.info("Exploration stopped", exploration_id=exploration_id)
        return self.state.load(exploration_id)

    def list_explorations(self, status=None, active_only: bool = False,
                          repository: Path | None = None) -> list[Exploration]:
        return self.state.list_explorations(
            status=status, active_only=active_only, repository=repository
        )

    def get_status(self, exploration_id: str) -> ExplorationStatusReport:
        exploration = self.state.load(exploration_id)
        stats = CollaborationCoordinator(self.state.shared_dir(exploration_id)).get_stats()
        return ExplorationStatusReport(
            exploration=exploration,
            collaboration=stats,
            running=[a.index for a in exploration.attempts if a.status == "running"],
            pending=[a.index for a in exploration.attempts
                     if a.status == "pending" and a.reason != "skipped"],
            skipped=[a.index for a in exploration.attempts
                     if a.status == "pending" and a.reason == "skipped"],
        )

    def compare(self, exploration_id: str) -> ComparisonReport:
        """Regenerate the comparison report from the stored records."""
        exploration = self.state.load(exploration_id)
        comparator = ResultComparator(
            self.state, self.repository, policy_for(exploration.settings.winner_policy)
        )
        report = comparator.generate_comparison_report(exploration)
        comparator.write_report(report)
        return report

    async def cleanup(
        self,
        exploration_id: str | None = None,
        filters: CleanupFilters | None = None,
        dry_run: bool = False,
    ) -> CleanupResult:
        return await self.cleaner.cleanup(exploration_id, filters, dry_run)


def _revalidate(settings: ExplorationSettings) -> ExplorationSettings:
    """Run validators again; attribute assignment does not trigger them."""
    try:
        return ExplorationSettings.model_validate(settings.model_dump())
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
