"""YAML settings source supporting ``include:`` and ``--include``."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import yaml
from platformdirs import user_config_dir
from pydantic_settings import BaseSettings, YamlConfigSettingsSource

CONFIG_FILENAME = "forkcat.yaml"
DEFAULTS_FILE = Path(__file__).parent.parent / "defaults" / "default.yaml"

_bootstrap_logger = None


def _get_bootstrap_logger():
    """Console logger used while the real one is still being loaded."""
    global _bootstrap_logger
    if _bootstrap_logger is None:
        from forkcat.core.log import Logger
        _bootstrap_logger = Logger()
        _bootstrap_logger.setup(log_root=Path.home(), run_name="bootstrap")
    return _bootstrap_logger


def _cleanup_bootstrap_logger():
    global _bootstrap_logger
    if _bootstrap_logger:
        _bootstrap_logger.close()
        _bootstrap_logger = None


def cli_includes(argv: list[str]) -> list[str]:
    """Values of every ``--include FILE`` pair in ``argv``."""
    return [
        argv[i + 1]
        for i in range(1, len(argv) - 1)
        if argv[i] == "--include"
    ]


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = base.copy()
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class YamlWithIncludesSettingsSource(YamlConfigSettingsSource):
    """Layered YAML configuration.

    Merge order, later wins: packaged defaults, user config
    (platformdirs), ./forkcat.yaml, then ``--include`` files from the
    command line. Any file may pull in others with ``include:``,
    resolved relative to the including file.
    """

    def __init__(self, settings_cls: type[BaseSettings], yaml_file=None):
        includes = cli_includes(sys.argv)
        base = yaml_file or settings_cls.model_config.get("yaml_file")
        if includes:
            base_files = [] if not base else (
                [base] if isinstance(base, (str, os.PathLike)) else list(base)
            )
            yaml_file = base_files + includes
        else:
            yaml_file = base
        super().__init__(settings_cls, yaml_file)

    def _candidate_files(self, files) -> list[Path]:
        candidates = [
            DEFAULTS_FILE,
            Path(user_config_dir("forkcat", appauthor=False)) / CONFIG_FILENAME,
            Path(CONFIG_FILENAME),
        ]
        if files:
            if isinstance(files, (str, os.PathLike)):
                files = [files]
            for f in files:
                path = Path(f).expanduser()
                if path not in candidates:
                    candidates.append(path)
        return candidates

    def _read_files(self, files):
        result = {}
        for file_path in self._candidate_files(files):
            if not file_path.is_file():
                _get_bootstrap_logger().debug(
                    "Configuration file not found (skipping)",
                    file=str(file_path),
                )
                continue
            with _get_bootstrap_logger().span(
                "Configuration loading", file=str(file_path)
            ):
                result = deep_merge(
                    result, self._load_file_recursive(file_path, set())
                )
        return result

    def _load_file_recursive(self, filepath: Path, visited: set[Path]) -> dict:
        """Load ``filepath`` with its includes merged underneath it.

        Raises:
            ValueError: If a file includes itself, directly or not
        """
        filepath = filepath.resolve()
        if filepath in visited:
            raise ValueError(f"Circular include: {filepath}")
        visited.add(filepath)

        with open(filepath) as f:
            data = yaml.safe_load(f) or {}

        includes = data.pop("include", None) or []
        if isinstance(includes, str):
            includes = [includes]
        for inc in includes:
            inc_path = Path(inc)
            if not inc_path.is_absolute():
                inc_path = filepath.parent / inc_path
            with _get_bootstrap_logger().span(
                f"Including {inc_path.name}", included_from=str(filepath)
            ):
                data = deep_merge(
                    self._load_file_recursive(inc_path, visited.copy()), data
                )
        return data
