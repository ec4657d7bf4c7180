"""Sandbox runtimes that isolate task-runners."""

from forkcat.core.errors import ConfigurationError
from forkcat.sandbox.base import (
    SandboxHandle,
    SandboxLimits,
    SandboxRuntime,
    SandboxSpec,
)
from forkcat.sandbox.docker import DockerSandbox
from forkcat.sandbox.process import ProcessSandbox

RUNTIMES = {
    DockerSandbox.name: DockerSandbox,
    ProcessSandbox.name: ProcessSandbox,
}


def create_runtime(name: str) -> SandboxRuntime:
    """Instantiate the runtime registered under ``name``."""
    try:
        return RUNTIMES[name]()
    except KeyError:
        raise ConfigurationError(f"Unknown sandbox runtime: {name}") from None


__all__ = [
    "DockerSandbox",
    "ProcessSandbox",
    "SandboxHandle",
    "SandboxLimits",
    "SandboxRuntime",
    "SandboxSpec",
    "create_runtime",
]
