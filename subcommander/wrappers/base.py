"""
Base interfaces for privilege-elevation wrappers.

A wrapper knows the argv prefix that elevates a target command and the text its
helper prints when prompting for, or refusing, a credential.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

from subcommander.core.models import CommandSpec, StreamMode


def _merge(first: Sequence[str], second: Sequence[str]) -> List[str]:
    merged: List[str] = []
    for p in (*first, *second):
        if p not in merged:
            merged.append(p)
    return merged


class ElevationWrapper(ABC):
    name = "wrapper"
    prompt_patterns: Sequence[str] = ()
    rejection_patterns: Sequence[str] = ()

    @abstractmethod
    def prefix(self) -> List[str]:
        """argv placed in front of the target command."""
        raise NotImplementedError

    def wrap(self, spec: CommandSpec) -> CommandSpec:
        """The target spec run through this wrapper with every stream on one pty."""
        argv = [*self.prefix(), *spec.argv]
        return spec.model_copy(update={
            "program": argv[0],
            "args": tuple(argv[1:]),
            "stdin": StreamMode.PTY,
            "stdout": StreamMode.PTY,
            "stderr": StreamMode.PTY,
        })

    def prompt_config(self, config):
        """``config`` with this wrapper's prompt and rejection patterns added."""
        return config.model_copy(update={
            "prompt_patterns": _merge(config.prompt_patterns, self.prompt_patterns),
            "rejection_patterns": _merge(config.rejection_patterns, self.rejection_patterns),
        })

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {' '.join(self.prefix())}>"


class PrefixWrapper(ElevationWrapper):
    """Any helper that takes the target argv as trailing arguments (pkexec, su -c wrappers, ...)."""

    name = "prefix"

    def __init__(self, prefix: Sequence[str], prompt_patterns: Sequence[str] = (), rejection_patterns: Sequence[str] = ()):
        if not prefix:
            raise ValueError("prefix wrapper needs at least the helper program")
        self._prefix = list(prefix)
        self.prompt_patterns = tuple(prompt_patterns)
        self.rejection_patterns = tuple(rejection_patterns)

    def prefix(self) -> List[str]:
        return list(self._prefix)
