"""
Pydantic models shared by both execution strategies (command descriptor + exit result).
"""

from __future__ import annotations

import os
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class StreamMode(str, Enum):
    """How one of stdin/stdout/stderr is wired into the child."""
    INHERIT = "inherit"
    PIPE = "pipe"
    PTY = "pty"
    NULL = "null"


class CommandSpec(BaseModel):
    """Immutable description of one process to spawn.

    Built through :class:`subcommander.core.command.Command`; validated here so a
    hand-constructed spec obeys the same rules.
    """

    model_config = ConfigDict(frozen=True)

    program: str
    args: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    clear_env: bool = False
    cwd: Optional[str] = None
    stdin: StreamMode = StreamMode.INHERIT
    stdout: StreamMode = StreamMode.INHERIT
    stderr: StreamMode = StreamMode.INHERIT

    @field_validator("program")
    @classmethod
    def program_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("program must not be empty")
        return v

    @field_validator("env")
    @classmethod
    def env_names_valid(cls, v: Tuple[Tuple[str, str], ...]) -> Tuple[Tuple[str, str], ...]:
        for name, _ in v:
            if not name or "=" in name or "\0" in name:
                raise ValueError(f"invalid environment variable name: {name!r}")
        return v

    @model_validator(mode="after")
    def check_pty(self) -> "CommandSpec":
        # a pty stands in for a terminal: input and output share it
        modes = (self.stdin, self.stdout, self.stderr)
        if StreamMode.PTY in modes and not (self.stdin is StreamMode.PTY and self.stdout is StreamMode.PTY):
            raise ValueError("pty mode requires both stdin and stdout to be bound to the pty")
        return self

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def environment(self) -> Dict[str, str]:
        """Environment overrides as a fresh dict."""
        return dict(self.env)

    def resolved_env(self) -> Optional[Dict[str, str]]:
        """Environment handed to the OS; None means inherit the parent's unchanged."""
        if self.clear_env:
            return dict(self.env)
        if not self.env:
            return None
        return {**os.environ, **dict(self.env)}

    def uses_pty(self) -> bool:
        return StreamMode.PTY in (self.stdin, self.stdout, self.stderr)


class ExitResult(BaseModel):
    """Outcome of a finished process. stdout/stderr are None unless captured."""

    model_config = ConfigDict(frozen=True)

    args: list[str] = Field(default_factory=list)
    pid: Optional[int] = None
    returncode: Optional[int] = None
    signal: Optional[int] = None
    stdout: Optional[bytes] = None
    stderr: Optional[bytes] = None
    truncated: bool = False
    timed_out: bool = False
    duration: float = 0.0

    @model_validator(mode="after")
    def check_status(self) -> "ExitResult":
        if self.returncode is None and self.signal is None:
            raise ValueError("exit result needs a returncode or a signal")
        return self

    @classmethod
    def from_status(cls, returncode: int, **kwargs) -> "ExitResult":
        """Build from a Popen-style returncode (negative means killed by signal)."""
        if returncode < 0:
            return cls(returncode=None, signal=-returncode, **kwargs)
        return cls(returncode=returncode, signal=None, **kwargs)

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def exit_code(self) -> int:
        """Shell-style status: the exit code, or 128 + signal number."""
        if self.returncode is not None:
            return self.returncode
        return 128 + int(self.signal or 0)

    @property
    def stdout_text(self) -> str:
        return (self.stdout or b"").decode(errors="replace")

    @property
    def stderr_text(self) -> str:
        return (self.stderr or b"").decode(errors="replace")


class RunOptions(BaseModel):
    """Per-run knobs for the convenience runners and the CLI."""

    password: Optional[str] = Field(default=None, repr=False)
    # echo output to the console as it arrives
    showout: bool = False
    max_output: Optional[int] = None
    timeout: Optional[float] = None
    chunk_size: int = 64 * 1024

    @field_validator("max_output")
    @classmethod
    def max_output_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("max_output must be positive")
        return v

    @field_validator("chunk_size")
    @classmethod
    def chunk_size_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be positive")
        return v

    def initial_input(self, input: Optional[bytes]) -> Optional[bytes]:
        """``input`` preceded by the password line, when a password is set."""
        if self.password is None:
            return input
        return (self.password + "\n").encode() + (input or b"")


__all__ = ["StreamMode", "CommandSpec", "ExitResult", "RunOptions"]
