"""Sandbox runtime capability interface.

A task-runner is anything that accepts a working directory and
resource limits, reports progress to a file and writes a result
artifact. Runtimes only start it, watch it and stop it; forkcat never
calls into the task-runner in-process.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from forkcat.core.config import parse_memory


@dataclass
class SandboxLimits:
    cpus: float
    memory: str

    @property
    def memory_bytes(self) -> int:
        return parse_memory(self.memory)


@dataclass
class SandboxSpec:
    """Everything needed to start one attempt's sandbox."""

    name: str
    workdir: Path
    shared_dir: Path
    limits: SandboxLimits
    command: list[str] = field(default_factory=list)
    image: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    port: int | None = None


@dataclass
class SandboxHandle:
    """Reference to a started sandbox, persisted as ``container_id``."""

    id: str
    name: str
    runtime: str


@runtime_checkable
class SandboxRuntime(Protocol):
    """What the orchestrator needs from an isolation backend."""

    name: str

    def is_available(self) -> bool:
        """Whether the runtime can start sandboxes right now."""
        ...

    def version(self) -> str | None:
        ...

    def mount_points(self, workdir: Path, shared_dir: Path) -> tuple[str, str]:
        """Worktree and shared directory as seen inside the sandbox."""
        ...

    async def start(self, spec: SandboxSpec) -> SandboxHandle:
        """Start the sandbox; raises SandboxError on failure."""
        ...

    async def wait(self, handle: SandboxHandle) -> int:
        """Block until the sandbox exits and return its exit code."""
        ...

    async def is_running(self, handle: SandboxHandle) -> bool:
        ...

    async def stop(self, handle: SandboxHandle, grace_seconds: float) -> bool:
        """Terminate, escalating to a kill after the grace period.

        Best-effort: failures are logged, never raised. Returns whether
        the sandbox is known to be stopped.
        """
        ...

    async def remove(self, handle: SandboxHandle) -> None:
        """Release whatever the stopped sandbox still holds."""
        ...

    async def logs(self, handle: SandboxHandle, tail: int = 100) -> str:
        ...
