"""Tests for logger cleanup cascade via BaseCloseable."""

import pytest

from forkcat.core.log import ConsoleSink, FileSink, Logger, OTLPSink


def file_logger(tmp_path) -> Logger:
    return Logger(
        console=ConsoleSink(enabled=False),
        file=FileSink(enabled=True, path=str(tmp_path / "test.log")),
        otlp=OTLPSink(enabled=False),
        logfire={"enabled": False},
    )


def test_logger_closes_file_via_context_manager(tmp_path):
    """Leaving the context closes the log file."""
    logger = file_logger(tmp_path)
    logger.setup(log_root=tmp_path, run_name="test")

    assert logger.file._file is not None
    assert not logger.file._file.closed

    with logger:
        logger.info("test message")

    assert logger.file._file.closed


def test_logger_closes_on_exception(tmp_path):
    """Files are closed even when the block raises."""
    logger = file_logger(tmp_path)
    logger.setup(log_root=tmp_path, run_name="test")

    with pytest.raises(ValueError), logger:
        logger.info("before exception")
        raise ValueError("test exception")

    assert logger.file._file.closed


def test_logger_level_cascades_to_sinks():
    logger = Logger(level="trace")

    assert logger.console.level == "trace"
    assert logger.file.level == "trace"


def test_explicit_sink_level_wins():
    logger = Logger(level="trace", console=ConsoleSink(level="warn"))

    assert logger.console.level == "warn"


def test_config_cascade_closes_logger(tmp_path, git_repo):
    """Config.close() cascades to Logger and then to each sink."""
    from forkcat.core.config import Config, RepoConfig

    config = Config(
        logger=file_logger(tmp_path),
        repo=RepoConfig(workdir=git_repo, explorations_dir=tmp_path / "state"),
        log_root=tmp_path / "logs",
    )
    sink = config.logger.file

    assert sink._file is not None
    assert not sink._file.closed

    config.close()

    assert sink._file.closed


def test_close_is_idempotent(tmp_path):
    logger = file_logger(tmp_path)
    logger.setup(log_root=tmp_path, run_name="test")

    logger.close()
    logger.close()

    assert logger.file._file.closed
