"""Materialize and release the worktree + sandbox of one attempt."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from forkcat.core.errors import ForkcatError, ProvisioningError
from forkcat.core.log import logger
from forkcat.exploration.models import Attempt, Exploration, sandbox_name
from forkcat.exploration.resources import PortAllocator, allocate_resources
from forkcat.exploration.worktree import WorktreeManager
from forkcat.sandbox.base import SandboxHandle, SandboxRuntime, SandboxSpec


@dataclass
class ProvisionedAttempt:
    worktree_path: Path
    branch_name: str
    container_id: str
    port: int
    handle: SandboxHandle


@dataclass
class ReleaseReport:
    sandbox_stopped: bool = False
    worktree_removed: bool = False
    branch_deleted: bool = False
    errors: list[str] = field(default_factory=list)


def progress_file(shared_dir: Path | str, index: int) -> str:
    return f"{shared_dir}/progress/attempt-{index}.json"


class AttemptProvisioner:
    """Creates an attempt's branch, worktree and sandbox, and undoes it."""

    def __init__(
        self,
        worktrees: WorktreeManager,
        runtime: SandboxRuntime,
        ports: PortAllocator | None = None,
    ):
        self.worktrees = worktrees
        self.runtime = runtime
        self.ports = ports

    def sandbox_env(
        self, exploration: Exploration, attempt: Attempt, shared_dir: Path, port: int
    ) -> dict[str, str]:
        settings = exploration.settings
        workdir, shared = self.runtime.mount_points(attempt.worktree_path, shared_dir)
        return {
            "FORKCAT_EXPLORATION_ID": exploration.id,
            "FORKCAT_ATTEMPT_INDEX": str(attempt.index),
            "FORKCAT_STRATEGY": attempt.strategy or "",
            "FORKCAT_TASK": exploration.task,
            "FORKCAT_PORT": str(port),
            "FORKCAT_WORKDIR": workdir,
            "FORKCAT_SHARED_DIR": shared,
            "FORKCAT_PROGRESS_FILE": progress_file(shared, attempt.index),
            "FORKCAT_ARTIFACT_PATH": f"{workdir}/{settings.artifact_path}",
        }

    async def provision(
        self, exploration: Exploration, attempt: Attempt, shared_dir: Path
    ) -> ProvisionedAttempt:
        """Create the attempt's worktree, then start its sandbox.

        A sandbox that fails to start takes its fresh worktree and
        branch with it.

        Raises:
            ProvisioningError: If either step fails
        """
        settings = exploration.settings
        with logger.span("Provisioning attempt", exploration_id=exploration.id,
                         index=attempt.index):
            await asyncio.to_thread(
                self.worktrees.create_worktree,
                attempt.worktree_path, attempt.branch_name, settings.base_ref,
            )
            try:
                resources = allocate_resources(
                    exploration.id, attempt.index, settings, self.ports
                )
                spec = SandboxSpec(
                    name=resources.sandbox_name,
                    workdir=attempt.worktree_path,
                    shared_dir=shared_dir,
                    limits=resources.limits,
                    command=list(settings.command),
                    image=settings.image,
                    env=self.sandbox_env(
                        exploration, attempt, shared_dir, resources.port
                    ),
                    port=resources.port,
                )
                handle = await self.runtime.start(spec)
            except ForkcatError as e:
                await self._discard_worktree(attempt)
                raise ProvisioningError(
                    f"sandbox for attempt {attempt.index} failed to start: {e}"
                ) from e

        return ProvisionedAttempt(
            worktree_path=attempt.worktree_path,
            branch_name=attempt.branch_name,
            container_id=handle.id,
            port=resources.port,
            handle=handle,
        )

    async def _discard_worktree(self, attempt: Attempt) -> None:
        try:
            await asyncio.to_thread(
                self.worktrees.remove_worktree, attempt.worktree_path, True
            )
            await asyncio.to_thread(
                self.worktrees.delete_branch, attempt.branch_name, True
            )
        except (ForkcatError, OSError) as e:
            logger.warn("Could not discard worktree of failed attempt",
                        index=attempt.index, error=str(e))

    def handle_for(self, exploration_id: str, attempt: Attempt) -> SandboxHandle | None:
        if not attempt.container_id:
            return None
        return SandboxHandle(
            id=attempt.container_id,
            name=sandbox_name(exploration_id, attempt.index),
            runtime=self.runtime.name,
        )

    async def release_sandbox(
        self, exploration_id: str, attempt: Attempt, grace_seconds: float,
        report: ReleaseReport | None = None,
    ) -> ReleaseReport:
        """Stop and remove the attempt's sandbox. Never raises."""
        report = report or ReleaseReport()
        handle = self.handle_for(exploration_id, attempt)
        if handle is None:
            return report
        report.sandbox_stopped = await self.runtime.stop(handle, grace_seconds)
        await self.runtime.remove(handle)
        return report

    async def release(
        self,
        exploration_id: str,
        attempt: Attempt,
        grace_seconds: float,
        remove_worktree: bool = True,
    ) -> ReleaseReport:
        """Best-effort teardown; failures end up in ``report.errors``."""
        report = await self.release_sandbox(exploration_id, attempt, grace_seconds)
        if not remove_worktree:
            return report
        try:
            report.worktree_removed = await asyncio.to_thread(
                self.worktrees.remove_worktree, attempt.worktree_path, True
            )
        except (ForkcatError, OSError) as e:
            report.errors.append(f"attempt {attempt.index} worktree: {e}")
        try:
            report.branch_deleted = await asyncio.to_thread(
                self.worktrees.delete_branch, attempt.branch_name, True
            )
        except (ForkcatError, OSError) as e:
            report.errors.append(f"attempt {attempt.index} branch: {e}")
        for error in report.errors:
            logger.warn("Cleanup error", exploration_id=exploration_id, error=error)
        return report
