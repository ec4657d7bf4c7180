"""Application configuration and settings loading."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from forkcat.core.base import BaseConfig
from forkcat.core.errors import ConfigurationError
from forkcat.core.log import Logger
from forkcat.core.yaml_settings import YamlWithIncludesSettingsSource

# Modules reachable from {module.attr} templates in YAML values,
# e.g. {platformdirs.user_state_dir} or {os.getcwd}
TEMPLATE_NAMESPACE = {
    'os': os,
    'platformdirs': platformdirs,
    'Path': Path,
}

MAX_BRANCHES = 10

_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}


def parse_memory(value: str) -> int:
    """Convert docker-style memory notation ("512m", "2g") to bytes."""
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*([bkmg]?)b?\s*", value.lower())
    if not match:
        raise ConfigurationError(f"Invalid memory limit: {value!r}")
    return int(float(match.group(1)) * _MEMORY_UNITS[match.group(2)])


class RepoConfig(BaseConfig):
    """Repository being explored and where exploration state lives."""

    workdir: Path = Field(
        default_factory=Path.cwd,
        description="Path to the git repository (main working tree)",
    )
    explorations_dir: Path = Field(
        default_factory=lambda: (
            Path(platformdirs.user_state_dir("forkcat", appauthor=False))
            / "explorations"
        ),
        description=(
            "Root directory for exploration state, worktrees and "
            "collaboration pools (supports {platformdirs.*} templates)"
        ),
    )


class ExplorationSettings(BaseConfig):
    """Options for one exploration run."""

    branches: int = Field(
        default=3,
        description=f"Number of parallel attempts (1-{MAX_BRANCHES})",
    )
    strategies: list[str] | None = Field(
        default=None,
        description=(
            "Strategy tag per attempt; when given its length must "
            "equal branches"
        ),
    )
    mode: Literal["parallel", "sequential"] = Field(
        default="parallel",
        description=(
            "parallel: run every attempt at once; sequential: run in "
            "index order and stop at the first success"
        ),
    )
    timeout_minutes: float = Field(
        default=30, gt=0, description="Per-attempt timeout in minutes"
    )
    cpu_limit: float = Field(
        default=2.0, gt=0, description="CPU cores per sandbox"
    )
    memory_limit: str = Field(
        default="2g", description="Memory per sandbox (docker notation)"
    )
    port_range_start: int = Field(default=3000, ge=1, le=65535)
    port_range_end: int = Field(default=3100, ge=1, le=65535)
    auto_merge: bool = Field(
        default=False, description="Merge the winning attempt when done"
    )
    no_cleanup: bool = Field(
        default=False,
        description="Keep every worktree and sandbox after the run",
    )
    runtime: Literal["docker", "process"] = Field(
        default="docker",
        description="Sandbox runtime: docker containers or local processes",
    )
    image: str = Field(
        default="forkcat/agent:latest",
        description="Container image for the docker runtime",
    )
    command: list[str] = Field(
        default_factory=list,
        description=(
            "Task-runner argv started in each sandbox; empty uses the "
            "image entrypoint"
        ),
    )
    base_ref: str = Field(
        default="HEAD", description="Commit every attempt branches from"
    )
    artifact_path: str = Field(
        default=".forkcat/result.json",
        description="Result artifact path relative to the worktree",
    )
    poll_interval_seconds: float = Field(
        default=5.0, gt=0,
        description="How often running attempts are polled for progress",
    )
    stop_grace_seconds: int = Field(
        default=30, ge=0,
        description="Grace period before a stopping sandbox is killed",
    )
    winner_policy: Literal["overall", "declared"] = Field(
        default="overall",
        description=(
            "overall: comparator score; declared: the score the "
            "task-runner wrote into its artifact"
        ),
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> ExplorationSettings:
        if not 1 <= self.branches <= MAX_BRANCHES:
            raise ConfigurationError(
                f"branches must be between 1 and {MAX_BRANCHES}, "
                f"got {self.branches}"
            )
        if self.strategies and len(self.strategies) != self.branches:
            raise ConfigurationError(
                f"{len(self.strategies)} strategies given for "
                f"{self.branches} branches"
            )
        width = self.port_range_end - self.port_range_start + 1
        if width < self.branches:
            raise ConfigurationError(
                f"port range {self.port_range_start}-{self.port_range_end} "
                f"cannot hold {self.branches} branches"
            )
        parse_memory(self.memory_limit)
        return self

    def strategy_for(self, index: int) -> str | None:
        """Strategy tag of 1-based attempt ``index``."""
        if not self.strategies:
            return None
        return self.strategies[index - 1]


class SafetyConfig(BaseConfig):
    """Pre-flight check thresholds."""

    min_branches: int = Field(default=1, ge=1)
    max_branches: int = Field(default=MAX_BRANCHES, ge=1)
    memory_buffer: float = Field(
        default=1.2, ge=1.0,
        description="Headroom multiplier applied to required memory",
    )
    min_disk_gb: float = Field(
        default=5.0, ge=0, description="Free disk required for worktrees"
    )
    require_clean_tree: bool = Field(
        default=True,
        description="Fail when the main working tree has local changes",
    )
    check_resources: bool = Field(
        default=True, description="Check memory, CPU and disk headroom"
    )
    check_runtime: bool = Field(
        default=True, description="Check the sandbox runtime is reachable"
    )
    min_docker_version: str = Field(default="20.10")


class MergeConfig(BaseConfig):
    """Defaults for merging an attempt back."""

    strategy: Literal["direct", "squash", "rebase"] = Field(default="direct")
    target_branch: str | None = Field(
        default=None,
        description="Branch to merge into; defaults to the current branch",
    )
    create_backup: bool = Field(default=True)
    auto_resolve_conflicts: bool = Field(default=False)
    conflict_preference: Literal["theirs", "ours"] = Field(
        default="theirs",
        description=(
            "Side kept by auto-resolution: theirs is the attempt, "
            "ours is the target branch"
        ),
    )
    delete_worktree: bool = Field(default=True)
    create_pr: bool = Field(default=False)
    remote: str = Field(default="origin", description="Remote for PR pushes")
    lock_timeout_seconds: float = Field(
        default=300, gt=0,
        description="How long a merge waits for another merge to finish",
    )


class Config(BaseConfig):
    """Everything loaded from YAML, environment and command line."""

    logger: Logger = Field(
        default=None, description="Logger configuration and instance"
    )
    repo: RepoConfig = Field(default_factory=RepoConfig)
    exploration: ExplorationSettings = Field(
        default_factory=ExplorationSettings
    )
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)

    log_level: str = Field(
        default="info",
        alias="log-level",
        description="Console log level: spew, trace, debug, info, warn, error",
    )
    log_root: Path = Field(
        default_factory=lambda: (
            Path(platformdirs.user_state_dir("forkcat", appauthor=False))
            / "logs"
        ),
        description="Root directory for log files",
    )

    model_config = {"populate_by_name": True}

    @model_validator(mode='after')
    def _setup_logger(self) -> Config:
        """Install the global logger once configuration is known."""
        from forkcat.core.log import setup_logger
        from forkcat.core.yaml_settings import _cleanup_bootstrap_logger

        if self.logger is None:
            self.logger = Logger(level=self.log_level)

        setup_logger(
            log_root=self.log_root,
            run_name="forkcat",
            console=self.logger.console,
            otlp=self.logger.otlp,
            file=self.logger.file,
            logfire=self.logger.logfire,
            level=self.logger.level,
        )
        _cleanup_bootstrap_logger()
        return self

    def close(self):
        from forkcat.core.log import logger
        logger.close()
        super().close()


class State(BaseSettings):
    """Configuration as loaded for one CLI invocation.

    Sources, highest priority first: constructor arguments, YAML
    (defaults, user, ./forkcat.yaml, --include), .env, FORKCAT_*
    environment variables, secrets.
    """

    config: Config = Field(default_factory=Config)
    include: list[str] | None = Field(
        default=None,
        description="Additional YAML files to deep-merge over the config",
    )

    model_config = SettingsConfigDict(
        yaml_file="forkcat.yaml",
        env_file=".env",
        env_prefix="FORKCAT_",
        env_nested_delimiter="__",
        cli_parse_args=True,
        cli_implicit_flags=True,
        cli_use_class_docs_for_groups=True,
        arbitrary_types_allowed=True,
        extra='ignore',
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            YamlWithIncludesSettingsSource(settings_cls),
            dotenv_settings,
            env_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def substitute_templates(self) -> State:
        """Expand ``{config.a.b}`` and ``{module.attr}`` templates."""
        self._substitute_recursive(self)
        return self

    def _substitute_recursive(self, obj: Any) -> None:
        if isinstance(obj, BaseModel):
            for field_name in obj.__class__.model_fields:
                value = getattr(obj, field_name)
                new_value = self._substitute_value(value)
                if new_value is not value:
                    setattr(obj, field_name, new_value)
        elif isinstance(obj, dict):
            for key in obj:
                obj[key] = self._substitute_value(obj[key])
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                obj[i] = self._substitute_value(item)

    def _substitute_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._substitute_string(value)
        if isinstance(value, Path):
            substituted = self._substitute_string(str(value))
            return value if substituted == str(value) else Path(substituted)
        if isinstance(value, (BaseModel, dict, list)):
            self._substitute_recursive(value)
        return value

    def _substitute_string(self, value: str) -> str:
        """Replace ``{dotted.path}`` references; unknown ones stay."""
        def replace_template(match):
            parts = match.group(1).split(".")
            if parts[0] in TEMPLATE_NAMESPACE:
                obj = TEMPLATE_NAMESPACE[parts[0]]
                parts = parts[1:]
            else:
                obj = self
            try:
                for part in parts:
                    obj = getattr(obj, part)
                if callable(obj):
                    obj = (obj('forkcat', appauthor=False)
                           if getattr(obj, '__module__', '') == 'platformdirs'
                           else obj())
                return str(obj)
            except (AttributeError, TypeError):
                return match.group(0)

        return re.sub(r'\{([a-z._]+)\}', replace_template, value)


__all__ = [
    "Config",
    "ExplorationSettings",
    "MergeConfig",
    "RepoConfig",
    "SafetyConfig",
    "State",
    "parse_memory",
]
