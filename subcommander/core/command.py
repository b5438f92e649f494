"""
Fluent builder for CommandSpec.

Arguments are passed to the program verbatim; nothing here ever goes through a
shell. To run shell syntax, set the program to a shell and pass ``-c`` yourself.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import InvalidCommand
from .models import CommandSpec, StreamMode

ModeLike = Union[StreamMode, str]
PathLike = Union[str, "os.PathLike[str]"]


def _as_mode(mode: ModeLike) -> StreamMode:
    try:
        return StreamMode(mode)
    except ValueError:
        raise InvalidCommand(f"unknown stream mode: {mode!r}") from None


def _as_text(value: object, what: str) -> str:
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if isinstance(value, str):
        return value
    raise InvalidCommand(f"{what} must be a string or os.PathLike, got {type(value).__name__}")


class Command:
    """Mutable builder; ``build()`` freezes it into a CommandSpec.

    Example:
        spec = Command("tar").args("-czf", "out.tgz", "src").env("LC_ALL", "C").capture().build()
    """

    def __init__(self, program: PathLike = ""):
        self._program = _as_text(program, "program") if program else ""
        self._args: List[str] = []
        self._env: Dict[str, str] = {}
        self._clear_env = False
        self._cwd: Optional[str] = None
        self._modes: Dict[str, StreamMode] = {
            "stdin": StreamMode.INHERIT,
            "stdout": StreamMode.INHERIT,
            "stderr": StreamMode.INHERIT,
        }

    def program(self, program: PathLike) -> "Command":
        self._program = _as_text(program, "program")
        return self

    def arg(self, value: PathLike) -> "Command":
        self._args.append(_as_text(value, "argument"))
        return self

    def args(self, *values: PathLike) -> "Command":
        for v in values:
            self.arg(v)
        return self

    def env(self, name: str, value: str) -> "Command":
        self._env[_as_text(name, "environment name")] = _as_text(value, "environment value")
        return self

    def envs(self, mapping: Mapping[str, str]) -> "Command":
        for k, v in mapping.items():
            self.env(k, v)
        return self

    def clear_env(self, clear: bool = True) -> "Command":
        """Replace the parent environment with only the overrides."""
        self._clear_env = bool(clear)
        return self

    def cwd(self, path: Optional[PathLike]) -> "Command":
        self._cwd = None if path is None else str(Path(_as_text(path, "cwd")))
        return self

    def stdin(self, mode: ModeLike) -> "Command":
        self._modes["stdin"] = _as_mode(mode)
        return self

    def stdout(self, mode: ModeLike) -> "Command":
        self._modes["stdout"] = _as_mode(mode)
        return self

    def stderr(self, mode: ModeLike) -> "Command":
        self._modes["stderr"] = _as_mode(mode)
        return self

    def capture(self) -> "Command":
        """Pipe stdout and stderr back to the caller."""
        return self.stdout(StreamMode.PIPE).stderr(StreamMode.PIPE)

    def build(self) -> CommandSpec:
        if not self._program or not self._program.strip():
            raise InvalidCommand("program path must not be empty")
        try:
            return CommandSpec(
                program=self._program,
                args=tuple(self._args),
                env=tuple(self._env.items()),
                clear_env=self._clear_env,
                cwd=self._cwd,
                stdin=self._modes["stdin"],
                stdout=self._modes["stdout"],
                stderr=self._modes["stderr"],
            )
        except ValidationError as e:
            raise InvalidCommand(f"invalid command: {e.errors()[0].get('msg', e)}") from e

    def __repr__(self) -> str:
        return f"Command({[self._program, *self._args]!r})"


def make_spec(argv: List[str], **modes: ModeLike) -> CommandSpec:
    """Shorthand: CommandSpec from an argv list plus optional stream modes."""
    if not argv:
        raise InvalidCommand("command must include at least one argument")
    cmd = Command(argv[0]).args(*argv[1:])
    for name, mode in modes.items():
        if name not in ("stdin", "stdout", "stderr"):
            raise InvalidCommand(f"unknown stream: {name}")
        getattr(cmd, name)(mode)
    return cmd.build()


__all__ = ["Command", "make_spec"]
