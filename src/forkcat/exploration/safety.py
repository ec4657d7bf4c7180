"""Pre-flight checks run once before an exploration allocates anything."""

from __future__ import annotations

import math
from pathlib import Path

import psutil
from pydantic import BaseModel, Field

from forkcat.core.config import ExplorationSettings, SafetyConfig, parse_memory
from forkcat.core.errors import ForkcatError
from forkcat.core.log import logger
from forkcat.git.repository import GitRepository
from forkcat.sandbox.base import SandboxRuntime
from forkcat.sandbox.docker import parse_version

GIB = 1024 ** 3


class SafetyReport(BaseModel):
    passed: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def fail(self, message: str) -> None:
        self.passed = False
        self.errors.append(message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)


class SafetyValidator:
    """Read-only checks of branch bounds, runtime, host and repository.

    Every failed check contributes one error; callers must not
    allocate anything unless ``passed`` is true.
    """

    def __init__(
        self,
        repository: GitRepository,
        runtime: SandboxRuntime,
        settings: ExplorationSettings,
        config: SafetyConfig | None = None,
        state_root: Path | None = None,
    ):
        self.repository = repository
        self.runtime = runtime
        self.settings = settings
        self.config = config or SafetyConfig()
        self.state_root = state_root

    def validate(self, branch_count: int) -> SafetyReport:
        report = SafetyReport()
        self._check_bounds(branch_count, report)
        if self.config.check_runtime:
            self._check_runtime(report)
        if self.config.check_resources:
            self._check_memory(branch_count, report)
            self._check_cpu(branch_count, report)
            self._check_disk(report)
        self._check_repository(report)

        if report.passed:
            logger.debug("Safety validation passed", branches=branch_count,
                         warnings=len(report.warnings))
        else:
            logger.warn("Safety validation failed", errors=report.errors)
        return report

    def _check_bounds(self, branch_count: int, report: SafetyReport) -> None:
        low, high = self.config.min_branches, self.config.max_branches
        if branch_count > high:
            report.fail(
                f"Branch count {branch_count} exceeds maximum of {high}"
            )
        elif branch_count < low:
            report.fail(f"Branch count {branch_count} is below minimum of {low}")

    def _check_runtime(self, report: SafetyReport) -> None:
        version = self.runtime.version()
        if version is None:
            report.fail(f"Sandbox runtime '{self.runtime.name}' is not available")
            return
        if self.runtime.name == "docker":
            required = parse_version(self.config.min_docker_version)
            if parse_version(version) < required:
                report.fail(
                    f"Docker {version} is older than required "
                    f"{self.config.min_docker_version}"
                )

    def _check_memory(self, branch_count: int, report: SafetyReport) -> None:
        per_branch = parse_memory(self.settings.memory_limit)
        required = branch_count * per_branch * self.config.memory_buffer
        available = psutil.virtual_memory().available
        if available < required:
            report.fail(
                f"Insufficient memory: {required / GIB:.1f} GiB needed for "
                f"{branch_count} branches, {available / GIB:.1f} GiB available"
            )

    def _check_cpu(self, branch_count: int, report: SafetyReport) -> None:
        cores = psutil.cpu_count(logical=True) or 1
        if cores < branch_count:
            report.fail(
                f"Insufficient CPU: {branch_count} branches need at least "
                f"{branch_count} cores, {cores} available"
            )
            return
        wanted = math.ceil(branch_count * self.settings.cpu_limit)
        if cores < wanted:
            report.warn(
                f"CPU oversubscribed: {wanted} cores requested, {cores} available"
            )

    def _check_disk(self, report: SafetyReport) -> None:
        path = self.state_root or self.repository.workdir
        while not path.exists() and path != path.parent:
            path = path.parent
        try:
            free = psutil.disk_usage(str(path)).free
        except OSError as e:
            report.warn(f"Could not read free disk space: {e}")
            return
        if free < self.config.min_disk_gb * GIB:
            report.fail(
                f"Insufficient disk space: {free / GIB:.1f} GiB free, "
                f"{self.config.min_disk_gb:g} GiB required"
            )

    def _check_repository(self, report: SafetyReport) -> None:
        repo = self.repository
        try:
            if not repo.is_repository():
                report.fail(f"{repo.workdir} is not a git working tree")
                return
            if repo.unmerged_files():
                report.fail(
                    "Repository has unresolved conflicts; resolve them first"
                )
            operation = repo.operation_in_progress()
            if operation:
                report.fail(f"A {operation} is in progress in {repo.workdir}")
            if repo.current_branch() is None:
                report.fail("HEAD is detached; check out a branch first")
            if not repo.is_clean():
                message = "Working tree has uncommitted changes"
                if self.config.require_clean_tree:
                    report.fail(message)
                else:
                    report.warn(message)
        except ForkcatError as e:
            report.fail(f"Could not inspect repository: {e}")
