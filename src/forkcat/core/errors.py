"""Exception types raised by forkcat.

Precondition failures (configuration, safety) abort before anything is
allocated. Per-attempt failures (provisioning, sandbox) are recorded on
the attempt and never escape the orchestrator. Merge failures are fatal
to the merge call only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from forkcat.exploration.safety import SafetyReport


class ForkcatError(Exception):
    """Base class for all forkcat errors."""


class ConfigurationError(ForkcatError, ValueError):
    """Invalid exploration or merge settings."""


class SafetyValidationError(ForkcatError):
    """Pre-flight checks failed; nothing was allocated."""

    def __init__(self, report: SafetyReport):
        self.report = report
        super().__init__(
            "Safety validation failed: " + "; ".join(report.errors)
        )


class ExplorationNotFoundError(ForkcatError, KeyError):
    """No persisted exploration with the requested id."""

    def __str__(self):
        return f"Exploration not found: {self.args[0]}"


class InvalidTransitionError(ForkcatError):
    """A status change was rejected by the state store."""

    def __init__(self, subject: str, current: str, requested: str):
        self.subject = subject
        self.current = current
        self.requested = requested
        super().__init__(
            f"{subject}: cannot transition from {current} to {requested}"
        )


class ResourcesStillAllocatedError(ForkcatError):
    """Exploration still owns sandboxes or worktrees."""


class ProvisioningError(ForkcatError):
    """Worktree or sandbox for one attempt could not be created."""


class SandboxError(ForkcatError):
    """Sandbox runtime call failed."""


class GitCommandError(ForkcatError):
    """A git command exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(
            f"'{command}' failed with exit code {exit_code}"
            + (f": {detail}" if detail else "")
        )


class MergeError(ForkcatError):
    """Merge-back of an attempt could not be performed."""
