"""Tests for configuration models and their validation."""

import pytest
from pydantic import ValidationError

from forkcat.core.config import (
    ExplorationSettings,
    MergeConfig,
    parse_memory,
)
from forkcat.core.errors import ConfigurationError
from forkcat.merge.models import MergeOptions


@pytest.mark.parametrize("value,expected", [
    ("512m", 512 * 1024 ** 2),
    ("2g", 2 * 1024 ** 3),
    ("2GB", 2 * 1024 ** 3),
    ("1.5g", int(1.5 * 1024 ** 3)),
    ("1024", 1024),
    ("64k", 64 * 1024),
])
def test_parse_memory(value, expected):
    assert parse_memory(value) == expected


def test_parse_memory_rejects_garbage():
    with pytest.raises(ConfigurationError, match="Invalid memory limit"):
        parse_memory("lots")


def test_defaults_are_valid():
    settings = ExplorationSettings()

    assert settings.branches == 3
    assert settings.mode == "parallel"
    assert settings.timeout_minutes == 30
    assert settings.strategy_for(1) is None


@pytest.mark.parametrize("branches", [0, 11, -1])
def test_branch_count_out_of_bounds(branches):
    with pytest.raises(ValidationError, match="branches must be between 1 and 10"):
        ExplorationSettings(branches=branches)


@pytest.mark.parametrize("branches", [1, 10])
def test_branch_count_bounds_inclusive(branches):
    assert ExplorationSettings(branches=branches).branches == branches


def test_strategies_must_match_branches():
    with pytest.raises(ValidationError, match="2 strategies given for 3 branches"):
        ExplorationSettings(branches=3, strategies=["fast", "careful"])


def test_strategy_for_is_one_based():
    settings = ExplorationSettings(branches=2, strategies=["fast", "careful"])

    assert settings.strategy_for(1) == "fast"
    assert settings.strategy_for(2) == "careful"


def test_port_range_must_fit_branches():
    with pytest.raises(ValidationError, match="cannot hold 4 branches"):
        ExplorationSettings(branches=4, port_range_start=3000, port_range_end=3002)


def test_invalid_memory_limit():
    with pytest.raises(ValidationError, match="Invalid memory limit"):
        ExplorationSettings(memory_limit="plenty")


def test_non_positive_timeout():
    with pytest.raises(ValidationError):
        ExplorationSettings(timeout_minutes=0)


def test_merge_options_from_config():
    config = MergeConfig(strategy="squash", create_backup=False, remote="upstream")

    options = MergeOptions.from_config(config)

    assert options.strategy == "squash"
    assert options.create_backup is False
    assert options.remote == "upstream"
    assert options.pr_title is None


def test_merge_options_overrides_skip_none():
    config = MergeConfig(strategy="squash", target_branch="develop")

    options = MergeOptions.from_config(
        config, strategy="rebase", target_branch=None, create_pr=True
    )

    assert options.strategy == "rebase"
    assert options.target_branch == "develop"
    assert options.create_pr is True
