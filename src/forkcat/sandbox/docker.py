"""Docker container sandboxes, driven through the docker CLI."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

from forkcat.core.errors import SandboxError
from forkcat.core.log import logger
from forkcat.core.runner import Runner
from forkcat.git.repository import quote
from forkcat.sandbox.base import SandboxHandle, SandboxSpec

WORKSPACE_MOUNT = "/workspace"
SHARED_MOUNT = "/shared"

# docker answers with these when the container is already gone
_ALREADY_GONE = ("No such container", "is not running", "No such object")


def _docker(command: str, timeout: int | None = None):
    return Runner().execute(f"docker {command}", check=False, timeout=timeout)


def parse_version(text: str) -> tuple[int, ...]:
    """Leading numeric components: "20.10.21+dfsg1" is (20, 10, 21)."""
    parts = []
    for piece in text.strip().split("."):
        match = re.match(r"\d+", piece)
        if not match:
            break
        parts.append(int(match.group()))
        if match.end() < len(piece):
            break
    return tuple(parts)


class DockerSandbox:
    """One container per attempt with CPU and memory limits."""

    name = "docker"

    def __init__(self, poll_interval: float = 2.0):
        self.poll_interval = poll_interval

    def version(self) -> str | None:
        result = _docker(
            f"version --format {quote('{{.Server.Version}}')}", timeout=15
        )
        if result.exited != 0:
            return None
        return result.stdout.strip() or None

    def is_available(self) -> bool:
        return self.version() is not None

    def mount_points(self, workdir: Path, shared_dir: Path) -> tuple[str, str]:
        return WORKSPACE_MOUNT, SHARED_MOUNT

    def run_command(self, spec: SandboxSpec) -> str:
        args = [
            "run", "-d",
            "--name", spec.name,
            "--cpus", str(spec.limits.cpus),
            "--memory", spec.limits.memory,
            "-v", f"{Path(spec.workdir).resolve()}:{WORKSPACE_MOUNT}",
            "-v", f"{Path(spec.shared_dir).resolve()}:{SHARED_MOUNT}",
            "-w", WORKSPACE_MOUNT,
        ]
        if spec.port:
            args += ["-p", f"{spec.port}:{spec.port}"]
        for key, value in sorted(spec.env.items()):
            args += ["-e", f"{key}={value}"]
        args.append(spec.image or "")
        args += spec.command
        return quote(*args)

    async def start(self, spec: SandboxSpec) -> SandboxHandle:
        if not spec.image:
            raise SandboxError("docker sandboxes need an image")
        result = await asyncio.to_thread(_docker, self.run_command(spec))
        if result.exited != 0:
            raise SandboxError(
                f"docker run failed for {spec.name}: {result.stderr.strip()}"
            )
        container_id = result.stdout.strip()
        logger.debug("Container started", name=spec.name,
                     container_id=container_id[:12])
        return SandboxHandle(id=container_id, name=spec.name, runtime=self.name)

    async def _state(self, handle: SandboxHandle) -> tuple[str, int]:
        result = await asyncio.to_thread(
            _docker,
            f"inspect --format {quote('{{.State.Status}} {{.State.ExitCode}}')} "
            f"{quote(handle.id)}",
        )
        if result.exited != 0:
            raise SandboxError(
                f"cannot inspect {handle.name}: {result.stderr.strip()}"
            )
        try:
            status, exit_code = result.stdout.split()
            return status, int(exit_code)
        except ValueError as e:
            raise SandboxError(
                f"unexpected inspect output for {handle.name}: {result.stdout!r}"
            ) from e

    async def is_running(self, handle: SandboxHandle) -> bool:
        try:
            status, _ = await self._state(handle)
        except SandboxError:
            return False
        return status in ("created", "running", "restarting")

    async def wait(self, handle: SandboxHandle) -> int:
        # Polled rather than `docker wait` so cancellation is immediate
        while True:
            status, exit_code = await self._state(handle)
            if status in ("exited", "dead"):
                return exit_code
            await asyncio.sleep(self.poll_interval)

    async def stop(self, handle: SandboxHandle, grace_seconds: float) -> bool:
        try:
            result = await asyncio.to_thread(
                _docker, f"stop -t {int(grace_seconds)} {quote(handle.id)}"
            )
        except Exception as e:
            logger.warn("Failed to stop container", name=handle.name, error=str(e))
            return False
        if result.exited == 0 or any(m in result.stderr for m in _ALREADY_GONE):
            logger.debug("Container stopped", name=handle.name)
            return True
        logger.warn("Failed to stop container", name=handle.name,
                    error=result.stderr.strip())
        return False

    async def remove(self, handle: SandboxHandle) -> None:
        try:
            result = await asyncio.to_thread(
                _docker, f"rm -f {quote(handle.id)}"
            )
        except Exception as e:
            logger.warn("Failed to remove container", name=handle.name,
                        error=str(e))
            return
        if result.exited != 0 and not any(m in result.stderr for m in _ALREADY_GONE):
            logger.warn("Failed to remove container", name=handle.name,
                        error=result.stderr.strip())

    async def logs(self, handle: SandboxHandle, tail: int = 100) -> str:
        result = await asyncio.to_thread(
            _docker, f"logs --tail {tail} {quote(handle.id)}"
        )
        return result.stdout + result.stderr
