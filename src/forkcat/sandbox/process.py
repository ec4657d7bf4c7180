"""Local-process sandboxes for hosts without docker.

The task-runner runs as a child process in its worktree, in its own
session so the whole process group can be signalled. Memory is capped
with RLIMIT_AS; CPU limits are not enforced.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import sys
from pathlib import Path

from forkcat.core.errors import SandboxError
from forkcat.core.log import logger
from forkcat.sandbox.base import SandboxHandle, SandboxLimits, SandboxSpec

_PREFIX = "proc-"


def _memory_limiter(limits: SandboxLimits):
    if sys.platform == "win32":
        return None
    memory = limits.memory_bytes

    def apply():
        import resource
        resource.setrlimit(resource.RLIMIT_AS, (memory, memory))

    return apply


def _pid(handle: SandboxHandle) -> int | None:
    if handle.id.startswith(_PREFIX):
        with contextlib.suppress(ValueError):
            return int(handle.id[len(_PREFIX):])
    return None


class ProcessSandbox:
    """Runs each attempt as a local subprocess."""

    name = "process"

    def __init__(self, enforce_memory: bool = True):
        self.enforce_memory = enforce_memory
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._log_files: dict[str, object] = {}

    def version(self) -> str | None:
        return f"python {sys.version_info.major}.{sys.version_info.minor}"

    def is_available(self) -> bool:
        return True

    def mount_points(self, workdir: Path, shared_dir: Path) -> tuple[str, str]:
        return str(Path(workdir).resolve()), str(Path(shared_dir).resolve())

    async def start(self, spec: SandboxSpec) -> SandboxHandle:
        if not spec.command:
            raise SandboxError("process sandboxes need a command")

        log_path = Path(spec.shared_dir) / "logs" / f"{spec.name}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "ab")  # noqa: SIM115
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.command,
                cwd=str(spec.workdir),
                env={**os.environ, **spec.env},
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                preexec_fn=(
                    _memory_limiter(spec.limits) if self.enforce_memory else None
                ),
            )
        except OSError as e:
            log_file.close()
            raise SandboxError(f"cannot start {spec.name}: {e}") from e

        handle = SandboxHandle(
            id=f"{_PREFIX}{process.pid}", name=spec.name, runtime=self.name
        )
        self._processes[handle.id] = process
        self._log_files[handle.id] = log_file
        logger.debug("Process sandbox started", name=spec.name, pid=process.pid)
        return handle

    async def wait(self, handle: SandboxHandle) -> int:
        process = self._processes.get(handle.id)
        if process is None:
            raise SandboxError(f"{handle.name} was not started by this runtime")
        return await process.wait()

    async def is_running(self, handle: SandboxHandle) -> bool:
        process = self._processes.get(handle.id)
        if process is not None:
            return process.returncode is None
        pid = _pid(handle)
        if pid is None:
            return False
        try:
            os.kill(pid, 0)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    def _signal(self, pid: int, sig: int) -> None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(pid, sig)

    async def stop(self, handle: SandboxHandle, grace_seconds: float) -> bool:
        pid = _pid(handle)
        if pid is None:
            logger.warn("Unknown process sandbox handle", handle=handle.id)
            return False
        process = self._processes.get(handle.id)
        try:
            if process is not None and process.returncode is not None:
                return True
            self._signal(pid, signal.SIGTERM)
            if process is None:
                # Started by another forkcat process; nothing to wait on
                return True
            try:
                await asyncio.wait_for(process.wait(), grace_seconds)
            except TimeoutError:
                logger.debug("Grace period elapsed, killing", name=handle.name)
                self._signal(pid, signal.SIGKILL)
                await process.wait()
        except Exception as e:
            logger.warn("Failed to stop process sandbox", name=handle.name,
                        error=str(e))
            return False
        logger.debug("Process sandbox stopped", name=handle.name)
        return True

    async def remove(self, handle: SandboxHandle) -> None:
        self._processes.pop(handle.id, None)
        log_file = self._log_files.pop(handle.id, None)
        if log_file is not None:
            log_file.close()

    async def logs(self, handle: SandboxHandle, tail: int = 100) -> str:
        log_file = self._log_files.get(handle.id)
        if log_file is None:
            return ""
        path = Path(log_file.name)
        lines = path.read_text(errors="replace").splitlines()
        return "\n".join(lines[-tail:])
