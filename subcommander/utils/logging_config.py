"""
Process-wide logging for subcommander.

Records go to a log file (full detail) and to stderr (warnings and up). stdout is
never used: it carries the output of the children the CLI runs.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FILE_ENV = "SUBCOMMANDER_LOG_FILE"
LOG_FSYNC_ENV = "SUBCOMMANDER_LOG_FSYNC"
LOG_PATH = Path.home() / ".subcommander" / "subcommander.log"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class _FastFileHandler(logging.FileHandler):
    """FileHandler that optionally fsyncs after every flush."""

    def __init__(self, filename, encoding="utf-8", *, fsync=False):
        super().__init__(filename, mode="a", encoding=encoding)
        self.fsync = fsync

    def flush(self):
        super().flush()
        # errors raised here reach logging's handleError through emit()
        if self.fsync and self.stream is not None:
            os.fsync(self.stream.fileno())


def _env_flag(name: str) -> bool:
    value = os.environ.get(name, "")
    return value.strip().lower() not in ("", "0", "false", "no", "off")


def default_log_path() -> Path:
    """$SUBCOMMANDER_LOG_FILE when set, else ~/.subcommander/subcommander.log."""
    env = os.environ.get(LOG_FILE_ENV)
    return Path(env).expanduser() if env else LOG_PATH


def _level(name: str) -> int:
    value = logging.getLevelName(name.upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level {name!r}")
    return value


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None,
    console_level: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the root logger for a subcommander process.

    Handlers installed by an earlier call are closed and replaced.

    Args:
        level: Level of the file handler and the root logger
        log_file: Log file path; defaults to :func:`default_log_path`
        format_string: Format of file records
        console_level: Level of the stderr handler (default WARNING)

    Returns:
        The ``subcommander`` package logger
    """
    file_level = _level(level)
    log_path = default_log_path() if log_file is None else Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(file_level)

    fh = _FastFileHandler(log_path, fsync=_env_flag(LOG_FSYNC_ENV))
    fh.setLevel(file_level)
    fh.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    root.addHandler(fh)

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(_level(console_level or "WARNING"))
    ch.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root.addHandler(ch)

    return logging.getLogger("subcommander")
