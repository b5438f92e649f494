"""
State for one communicate() exchange, shared by the sync and async strategies.

The strategies own the I/O scheduling (selectors vs. asyncio tasks); the session
only tracks what has been written, what has been captured, and whether the output
cap has cut the capture short.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

OutputCallback = Callable[[str, bytes], None]


class CommunicateSession:
    def __init__(
        self,
        input: Optional[bytes] = None,
        *,
        max_output: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_output: Optional[OutputCallback] = None,
    ):
        if input is not None and not isinstance(input, (bytes, bytearray, memoryview)):
            raise TypeError("communicate input must be bytes")
        if max_output is not None and max_output <= 0:
            raise ValueError("max_output must be positive")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._input = memoryview(bytes(input or b""))
        self.cursor = 0
        self.max_output = max_output
        self.chunk_size = chunk_size
        self.on_output = on_output
        self.buffers: Dict[str, bytearray] = {}
        self.captured = 0
        self.truncated = False
        self.timed_out = False
        self.input_abandoned = False

    # ----- input side -----

    @property
    def has_input(self) -> bool:
        return len(self._input) > 0

    @property
    def input_done(self) -> bool:
        return self.input_abandoned or self.cursor >= len(self._input)

    @property
    def line_open(self) -> bool:
        """True when the written input does not end with a newline."""
        return self.cursor > 0 and self._input[self.cursor - 1:self.cursor] != b"\n"

    def next_chunk(self) -> memoryview:
        return self._input[self.cursor:self.cursor + self.chunk_size]

    def advance(self, written: int) -> None:
        self.cursor += written

    def abandon_input(self, reason: str) -> None:
        """The child stopped reading; the rest of the input is dropped."""
        unwritten = len(self._input) - self.cursor
        logger.warning(f"child closed its input with {unwritten} bytes unwritten: {reason}")
        self.input_abandoned = True

    # ----- output side -----

    def track(self, name: str) -> None:
        self.buffers.setdefault(name, bytearray())

    def feed(self, name: str, data: bytes) -> bool:
        """Record output; returns False once the cap has cut the capture short."""
        if self.max_output is not None:
            room = self.max_output - self.captured
            if len(data) > room:
                data = data[:max(room, 0)]
                self.truncated = True
        if data:
            self.buffers[name].extend(data)
            self.captured += len(data)
            if self.on_output is not None:
                self.on_output(name, bytes(data))
        return not self.truncated

    def output(self, name: str) -> Optional[bytes]:
        buf = self.buffers.get(name)
        return None if buf is None else bytes(buf)


def echo_output(name: str, chunk: bytes) -> None:
    """on_output callback that mirrors captured output to our own stdout/stderr."""
    stream = sys.stderr if name == "stderr" else sys.stdout
    stream.flush()
    stream.buffer.write(chunk)
    stream.buffer.flush()


__all__ = ["CommunicateSession", "DEFAULT_CHUNK_SIZE", "OutputCallback", "echo_output"]
