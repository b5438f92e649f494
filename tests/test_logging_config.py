import logging

import pytest

from subcommander.utils.logging_config import _env_flag, default_log_path, setup_logging

from conftest import needs_proc_fd, open_fd_count


def test_setup_logging_writes_file(tmp_path):
    log_file = tmp_path / "nested" / "run.log"
    logger = setup_logging(level="DEBUG", log_file=log_file)
    assert logger.name == "subcommander"
    logging.getLogger("subcommander.core.sync_process").debug("spawned pid=1")
    for h in logging.getLogger().handlers:
        h.flush()
    assert "spawned pid=1" in log_file.read_text()


def test_console_handler_is_quiet(tmp_path, capsys):
    setup_logging(level="DEBUG", log_file=tmp_path / "run.log")
    logging.getLogger("subcommander").info("file only")
    logging.getLogger("subcommander").warning("both places")
    err = capsys.readouterr().err
    assert "both places" in err
    assert "file only" not in err


def test_default_path_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SUBCOMMANDER_LOG_FILE", str(tmp_path / "env.log"))
    assert default_log_path() == tmp_path / "env.log"
    setup_logging()
    assert (tmp_path / "env.log").exists()


def test_env_flag(monkeypatch):
    monkeypatch.delenv("SUBCOMMANDER_LOG_FSYNC", raising=False)
    assert _env_flag("SUBCOMMANDER_LOG_FSYNC") is False
    monkeypatch.setenv("SUBCOMMANDER_LOG_FSYNC", "1")
    assert _env_flag("SUBCOMMANDER_LOG_FSYNC") is True
    monkeypatch.setenv("SUBCOMMANDER_LOG_FSYNC", "no")
    assert _env_flag("SUBCOMMANDER_LOG_FSYNC") is False


def test_fsync_handler(tmp_path, monkeypatch):
    monkeypatch.setenv("SUBCOMMANDER_LOG_FSYNC", "1")
    log_file = tmp_path / "sync.log"
    setup_logging(level="INFO", log_file=log_file)
    logging.getLogger("subcommander").info("durable")
    assert "durable" in log_file.read_text()


@needs_proc_fd
def test_repeated_setup_keeps_one_log_descriptor(tmp_path, monkeypatch):
    monkeypatch.setenv("SUBCOMMANDER_LOG_FSYNC", "1")
    setup_logging(log_file=tmp_path / "run.log")
    before = open_fd_count()
    for _ in range(5):
        setup_logging(log_file=tmp_path / "run.log")
    assert open_fd_count() == before
    files = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
    assert len(files) == 1


def test_unknown_level_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        setup_logging(level="LOUD", log_file=tmp_path / "run.log")
