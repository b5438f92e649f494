"""
Error taxonomy for command execution.

Every failure the library can report is a subclass of CommandError and is raised
to the immediate caller. OS-level causes are chained (``raise ... from``).
"""

from __future__ import annotations

from typing import Optional


class CommandError(Exception):
    """Base class for all subcommander errors."""

    def __init__(self, reason: str = "error executing sub process"):
        super().__init__(reason)
        self.reason = reason


class InvalidCommand(CommandError):
    """Malformed command descriptor (caller error)."""


class StreamSetupFailed(CommandError):
    """A requested stdin/stdout/stderr stream could not be allocated."""


class PtyUnavailable(StreamSetupFailed):
    """No pseudo-terminal could be allocated on this system."""


class SpawnFailed(CommandError):
    """The OS refused to create the process (missing program, permissions, ...)."""


class WriteFailed(CommandError):
    """Writing to the child's stdin failed (closed or broken pipe)."""


class ReadFailed(CommandError):
    """Reading from the child's stdout/stderr failed."""


class ReadTimeout(CommandError):
    """No data became available within the requested read timeout."""


class WaitTimeout(CommandError):
    """The child did not exit within the requested wait timeout."""


class AlreadyWaited(CommandError):
    """The handle has already been reaped; its exit result was consumed."""

    def __init__(self, pid: Optional[int] = None):
        super().__init__(f"process {pid} has already been waited on" if pid else "process has already been waited on")
        self.pid = pid


class CommunicateFailed(CommandError):
    """The communicate exchange could not be performed."""


class CredentialRejected(CommandError):
    """The elevation wrapper rejected the supplied credential."""


class PromptTimeout(CommandError):
    """The elevation wrapper never showed a password prompt."""


class ConfigurationError(CommandError):
    """Configuration file missing sections or carrying invalid values."""


__all__ = [
    "CommandError",
    "InvalidCommand",
    "StreamSetupFailed",
    "PtyUnavailable",
    "SpawnFailed",
    "WriteFailed",
    "ReadFailed",
    "ReadTimeout",
    "WaitTimeout",
    "AlreadyWaited",
    "CommunicateFailed",
    "CredentialRejected",
    "PromptTimeout",
    "ConfigurationError",
]
