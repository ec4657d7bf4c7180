"""Tests for pre-flight safety validation."""

from types import SimpleNamespace

import psutil
import pytest
from conftest import ScriptedRuntime, run_git

from forkcat.core.config import ExplorationSettings, SafetyConfig
from forkcat.exploration.safety import GIB, SafetyValidator
from forkcat.git.repository import GitRepository


@pytest.fixture
def host(monkeypatch):
    """A host with 16 GiB free memory, 8 cores and 100 GiB free disk."""
    resources = SimpleNamespace(memory=16 * GIB, cores=8, disk=100 * GIB)
    monkeypatch.setattr(psutil, "virtual_memory",
                        lambda: SimpleNamespace(available=resources.memory))
    monkeypatch.setattr(psutil, "cpu_count", lambda logical=True: resources.cores)
    monkeypatch.setattr(psutil, "disk_usage",
                        lambda path: SimpleNamespace(free=resources.disk))
    return resources


def validator(git_repo, runtime=None, settings=None, **safety):
    return SafetyValidator(
        GitRepository(git_repo),
        runtime or ScriptedRuntime(),
        settings or ExplorationSettings(cpu_limit=1, memory_limit="1g"),
        SafetyConfig(**safety),
    )


def test_passes_on_healthy_host(git_repo, host):
    report = validator(git_repo).validate(3)

    assert report.passed
    assert report.errors == []


def test_branch_count_above_maximum(git_repo, host):
    report = validator(git_repo).validate(11)

    assert not report.passed
    assert any("exceeds maximum" in e for e in report.errors)


def test_branch_count_below_minimum(git_repo, host):
    report = validator(git_repo).validate(0)

    assert not report.passed
    assert any("below minimum" in e for e in report.errors)


def test_insufficient_memory(git_repo, host):
    host.memory = 2 * GIB

    report = validator(git_repo).validate(3)

    assert not report.passed
    assert any("Insufficient memory" in e for e in report.errors)


def test_memory_buffer_applies(git_repo, host):
    # 3 x 1 GiB fits in 3.5 GiB, but not with 20% headroom
    host.memory = int(3.5 * GIB)

    assert validator(git_repo, memory_buffer=1.0).validate(3).passed
    assert not validator(git_repo, memory_buffer=1.2).validate(3).passed


def test_fewer_cores_than_branches(git_repo, host):
    host.cores = 2

    report = validator(git_repo).validate(3)

    assert any("Insufficient CPU" in e for e in report.errors)


def test_cpu_oversubscription_is_a_warning(git_repo, host):
    host.cores = 4
    settings = ExplorationSettings(cpu_limit=2, memory_limit="1g")

    report = validator(git_repo, settings=settings).validate(3)

    assert report.passed
    assert any("oversubscribed" in w for w in report.warnings)


def test_insufficient_disk(git_repo, host):
    host.disk = 1 * GIB

    report = validator(git_repo).validate(3)

    assert any("Insufficient disk space" in e for e in report.errors)


def test_resource_checks_can_be_disabled(git_repo, host):
    host.memory = 0
    host.cores = 1
    host.disk = 0

    assert validator(git_repo, check_resources=False).validate(3).passed


def test_runtime_unavailable(git_repo, host):
    runtime = ScriptedRuntime()
    runtime.version = lambda: None

    report = validator(git_repo, runtime=runtime).validate(2)

    assert any("not available" in e for e in report.errors)


def test_old_docker(git_repo, host):
    runtime = ScriptedRuntime(name="docker")
    runtime.version = lambda: "19.03.12"

    report = validator(git_repo, runtime=runtime).validate(2)

    assert any("older than required 20.10" in e for e in report.errors)


def test_recent_docker(git_repo, host):
    runtime = ScriptedRuntime(name="docker")
    runtime.version = lambda: "24.0.7"

    assert validator(git_repo, runtime=runtime).validate(2).passed


def test_not_a_repository(tmp_path, host):
    report = validator(tmp_path).validate(2)

    assert any("not a git working tree" in e for e in report.errors)


def test_dirty_tree(git_repo, host):
    (git_repo / "scratch.txt").write_text("wip")

    strict = validator(git_repo).validate(2)
    lenient = validator(git_repo, require_clean_tree=False).validate(2)

    assert any("uncommitted changes" in e for e in strict.errors)
    assert lenient.passed
    assert any("uncommitted changes" in w for w in lenient.warnings)


def test_detached_head(git_repo, host):
    run_git(git_repo, "checkout", "--quiet", "--detach")

    report = validator(git_repo).validate(2)

    assert any("detached" in e for e in report.errors)


def test_every_failure_is_reported(git_repo, host):
    host.memory = 0
    (git_repo / "scratch.txt").write_text("wip")

    report = validator(git_repo).validate(11)

    assert len(report.errors) >= 3
