"""Pytest configuration and fixtures for forkcat tests."""

import asyncio
import json
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from forkcat.core.errors import SandboxError
from forkcat.core.log import ConsoleSink, setup_logger
from forkcat.sandbox.base import SandboxHandle, SandboxSpec


@pytest.fixture(autouse=True, scope="session")
def configure_logging():
    """Console-only debug logging; nothing is sent to logfire.dev."""
    test_log_root = Path(tempfile.gettempdir()) / "forkcat-tests"
    setup_logger(
        log_root=test_log_root,
        run_name="test",
        console=ConsoleSink(level="debug"),
    )


@pytest.fixture(autouse=True)
def isolated_argv(monkeypatch):
    """State parses sys.argv; keep pytest's own arguments away from it."""
    monkeypatch.setattr(sys, "argv", ["forkcat"])


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_files(cwd: Path, files: dict[str, str | None], message: str) -> str:
    """Write (or delete, for None) ``files`` and commit them."""
    for name, content in files.items():
        path = Path(cwd) / name
        if content is None:
            run_git(cwd, "rm", "--quiet", name)
            continue
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        run_git(cwd, "add", name)
    run_git(cwd, "commit", "--quiet", "-m", message)
    return run_git(cwd, "rev-parse", "HEAD")


@pytest.fixture
def git_repo(tmp_path, monkeypatch):
    """Fresh repository on ``main`` with one commit."""
    identity = {
        "GIT_AUTHOR_NAME": "Forkcat Tests",
        "GIT_AUTHOR_EMAIL": "tests@forkcat.invalid",
        "GIT_COMMITTER_NAME": "Forkcat Tests",
        "GIT_COMMITTER_EMAIL": "tests@forkcat.invalid",
        "GIT_CONFIG_NOSYSTEM": "1",
        "GIT_CONFIG_GLOBAL": os.devnull,
    }
    for key, value in identity.items():
        monkeypatch.setenv(key, value)

    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init", "--quiet", "-b", "main")
    commit_files(repo, {"README.md": "# demo\n", "app.py": "VALUE = 1\n"},
                 "Initial commit")
    return repo


@dataclass
class Script:
    """What a scripted sandbox does before it exits."""

    exit_code: int = 0
    duration: float = 0.0
    commit: dict[str, str | None] | None = None
    artifact: dict | None = None
    progress: dict | None = None


@dataclass
class ScriptedRuntime:
    """In-process stand-in for a sandbox runtime.

    Each attempt follows ``scripts[index]`` (or a plain success):
    it optionally reports progress, waits ``duration`` seconds unless
    stopped, commits files to its worktree and writes an artifact.
    """

    scripts: dict[int, Script] = field(default_factory=dict)
    fail_start: set[int] = field(default_factory=set)
    name: str = "scripted"
    started: list[int] = field(default_factory=list)
    envs: dict[int, dict[str, str]] = field(default_factory=dict)
    stopped: list[str] = field(default_factory=list)
    running: int = 0
    peak_running: int = 0

    def __post_init__(self):
        self._specs: dict[str, SandboxSpec] = {}
        self._stop_events: dict[str, asyncio.Event] = {}

    def is_available(self) -> bool:
        return True

    def version(self) -> str | None:
        return "1.0"

    def mount_points(self, workdir: Path, shared_dir: Path) -> tuple[str, str]:
        return str(workdir), str(shared_dir)

    async def start(self, spec: SandboxSpec) -> SandboxHandle:
        index = int(spec.env["FORKCAT_ATTEMPT_INDEX"])
        if index in self.fail_start:
            raise SandboxError(f"cannot start {spec.name}")
        self.started.append(index)
        self.envs[index] = dict(spec.env)
        handle = SandboxHandle(id=f"fake-{spec.name}", name=spec.name, runtime=self.name)
        self._specs[handle.id] = spec
        self._stop_events[handle.id] = asyncio.Event()
        return handle

    async def wait(self, handle: SandboxHandle) -> int:
        spec = self._specs[handle.id]
        script = self.scripts.get(int(spec.env["FORKCAT_ATTEMPT_INDEX"]), Script())
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        try:
            if script.progress is not None:
                path = Path(spec.env["FORKCAT_PROGRESS_FILE"])
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(json.dumps(script.progress))
            try:
                await asyncio.wait_for(
                    self._stop_events[handle.id].wait(), timeout=script.duration
                )
                return 137
            except TimeoutError:
                pass
            if script.commit:
                commit_files(spec.workdir, script.commit, f"Work of {spec.name}")
            if script.artifact is not None:
                path = Path(spec.env["FORKCAT_ARTIFACT_PATH"])
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(json.dumps(script.artifact))
            return script.exit_code
        finally:
            self.running -= 1

    async def is_running(self, handle: SandboxHandle) -> bool:
        return handle.id in self._specs and not self._stop_events[handle.id].is_set()

    async def stop(self, handle: SandboxHandle, grace_seconds: float) -> bool:
        self.stopped.append(handle.id)
        event = self._stop_events.get(handle.id)
        if event is not None:
            event.set()
        return True

    async def remove(self, handle: SandboxHandle) -> None:
        self._specs.pop(handle.id, None)

    async def logs(self, handle: SandboxHandle, tail: int = 100) -> str:
        return ""


@pytest.fixture
def make_config(git_repo, tmp_path):
    """Build a Config for ``git_repo`` with fast polling and no host checks."""
    from forkcat.core.config import (
        Config,
        ExplorationSettings,
        MergeConfig,
        RepoConfig,
        SafetyConfig,
    )
    from forkcat.core.log import FileSink, LogfireSink, Logger, OTLPSink

    def make(merge: dict | None = None, **exploration):
        settings = {
            "runtime": "process",
            "poll_interval_seconds": 0.05,
            "stop_grace_seconds": 1,
            **exploration,
        }
        return Config(
            logger=Logger(
                console=ConsoleSink(level="debug"),
                file=FileSink(enabled=False),
                otlp=OTLPSink(enabled=False),
                logfire=LogfireSink(enabled=False),
            ),
            repo=RepoConfig(workdir=git_repo, explorations_dir=tmp_path / "explorations"),
            exploration=ExplorationSettings(**settings),
            safety=SafetyConfig(check_resources=False),
            merge=MergeConfig(**(merge or {})),
            log_root=tmp_path / "logs",
        )

    return make


@pytest.fixture
def make_orchestrator(make_config):
    """Orchestrator over ``git_repo`` driven by a ScriptedRuntime."""
    from forkcat.exploration.orchestrator import ExplorationOrchestrator
    from forkcat.exploration.resources import PortAllocator

    def make(runtime: ScriptedRuntime | None = None, merge: dict | None = None,
             **exploration):
        config = make_config(merge=merge, **exploration)
        ports = PortAllocator(
            config.exploration.port_range_start,
            config.exploration.port_range_end,
            check_free=False,
        )
        return ExplorationOrchestrator(
            config, runtime=runtime or ScriptedRuntime(), ports=ports
        )

    return make
