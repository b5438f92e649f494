"""
Stream plumbing: wire the child's stdin/stdout/stderr to pipes, a pseudo-terminal,
the null device, or the parent's own streams, and own the parent-side ends.

Endpoints are thin wrappers over raw file descriptors. The synchronous strategy
uses them in blocking mode; the asynchronous strategy switches them to
non-blocking and waits for readiness through the event loop.
"""

from __future__ import annotations

import errno
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import PtyUnavailable, ReadFailed, StreamSetupFailed, WriteFailed
from .models import CommandSpec, StreamMode

try:
    import fcntl
    import pty
    import termios
    _HAVE_PTY = True
except Exception:
    _HAVE_PTY = False

logger = logging.getLogger(__name__)

_EOF_CHAR = b"\x04"


class Endpoint:
    """Parent-side half of a pipe."""

    kind = "pipe"

    def __init__(self, fd: int, role: str):
        self.fd = fd
        self.role = role
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def fileno(self) -> int:
        return self.fd

    def read_some(self, size: int) -> bytes:
        """One read() call. b"" means end-of-stream.

        BlockingIOError is passed through for non-blocking callers.
        """
        if self._closed:
            raise ReadFailed(f"{self.role} is closed")
        try:
            return os.read(self.fd, size)
        except BlockingIOError:
            raise
        except OSError as e:
            if self._is_hangup(e):
                return b""
            raise ReadFailed(f"read from {self.role} failed: {e}") from e

    def write_some(self, data) -> int:
        """One write() call; returns the number of bytes accepted."""
        if self._closed:
            raise WriteFailed(f"{self.role} is closed")
        try:
            return os.write(self.fd, data)
        except BlockingIOError:
            raise
        except OSError as e:
            raise WriteFailed(f"write to {self.role} failed: {e}") from e

    def _is_hangup(self, err: OSError) -> bool:
        return False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self.fd)
        except OSError as e:
            logger.debug(f"close({self.fd}) for {self.role} failed: {e}")

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self.role} fd={self.fd} {state}>"


class PtyEndpoint(Endpoint):
    """Master side of a pseudo-terminal; serves both stdin and stdout roles."""

    kind = "pty"

    def __init__(self, fd: int):
        super().__init__(fd, "pty")

    def _is_hangup(self, err: OSError) -> bool:
        # Linux reports EIO on the master once every slave fd is closed
        return err.errno == errno.EIO

    def eof_char(self) -> bytes:
        try:
            return termios.tcgetattr(self.fd)[6][termios.VEOF] or _EOF_CHAR
        except (termios.error, OSError, IndexError):
            return _EOF_CHAR

    def send_eof(self, line_open: bool = False) -> None:
        """Signal end-of-input the way a terminal user would (^D).

        A pending partial line needs one EOF to flush it and another to read as EOF.
        """
        self.write_some(self.eof_char() * (2 if line_open else 1))


def open_pty(echo: bool = False) -> Tuple[int, int]:
    """Allocate a (master, slave) pair with echo and CR/LF output mapping off."""
    if not _HAVE_PTY:
        raise PtyUnavailable("pseudo-terminals are not supported on this platform")
    try:
        master, slave = pty.openpty()
    except OSError as e:
        raise PtyUnavailable(f"could not allocate a pseudo-terminal: {e}") from e
    try:
        attrs = termios.tcgetattr(slave)
        if not echo:
            attrs[3] &= ~termios.ECHO
        attrs[1] &= ~termios.ONLCR
        termios.tcsetattr(slave, termios.TCSANOW, attrs)
    except (termios.error, OSError) as e:
        logger.debug(f"could not adjust pty attributes, keeping defaults: {e}")
    return master, slave


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); fd 0 is already the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _make_pipe(role: str) -> Tuple[int, int]:
    try:
        return os.pipe()
    except OSError as e:
        raise StreamSetupFailed(f"could not create pipe for {role}: {e}") from e


@dataclass
class StreamSet:
    """Everything allocated for one spawn attempt."""

    stdin: Optional[Endpoint] = None
    stdout: Optional[Endpoint] = None
    stderr: Optional[Endpoint] = None
    child: Dict[str, Any] = field(default_factory=lambda: {"stdin": None, "stdout": None, "stderr": None})
    child_fds: List[int] = field(default_factory=list)
    uses_pty: bool = False

    def endpoints(self) -> List[Endpoint]:
        seen: List[Endpoint] = []
        for ep in (self.stdin, self.stdout, self.stderr):
            if ep is not None and all(ep is not s for s in seen):
                seen.append(ep)
        return seen

    def popen_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = dict(self.child)
        if self.uses_pty:
            kwargs["start_new_session"] = True
            kwargs["preexec_fn"] = _acquire_controlling_tty
        return kwargs

    def close_child_ends(self) -> None:
        """Drop the parent's copies of the child's ends (needed to ever see EOF)."""
        while self.child_fds:
            fd = self.child_fds.pop()
            try:
                os.close(fd)
            except OSError as e:
                logger.debug(f"close child fd {fd} failed: {e}")

    def close_all(self) -> None:
        self.close_child_ends()
        for ep in self.endpoints():
            ep.close()


def allocate_streams(spec: CommandSpec) -> StreamSet:
    """Allocate every stream requested by ``spec``.

    On any failure, whatever was already allocated is released and
    StreamSetupFailed (or its PtyUnavailable subclass) is raised.
    """
    streams = StreamSet()
    master: Optional[PtyEndpoint] = None
    slave: Optional[int] = None
    try:
        if spec.uses_pty():
            m, slave = open_pty()
            streams.child_fds.append(slave)
            master = PtyEndpoint(m)
            streams.uses_pty = True

        for role in ("stdin", "stdout", "stderr"):
            mode: StreamMode = getattr(spec, role)
            if mode is StreamMode.INHERIT:
                continue
            if mode is StreamMode.NULL:
                streams.child[role] = subprocess.DEVNULL
            elif mode is StreamMode.PTY:
                streams.child[role] = slave
                # stderr on the pty is merged into the master's output
                if role != "stderr":
                    setattr(streams, role, master)
            elif mode is StreamMode.PIPE:
                r, w = _make_pipe(role)
                if role == "stdin":
                    streams.child_fds.append(r)
                    streams.child[role] = r
                    streams.stdin = Endpoint(w, role)
                else:
                    streams.child_fds.append(w)
                    streams.child[role] = w
                    setattr(streams, role, Endpoint(r, role))
    except StreamSetupFailed:
        streams.close_all()
        if master is not None:
            master.close()
        raise
    except OSError as e:
        streams.close_all()
        if master is not None:
            master.close()
        raise StreamSetupFailed(f"stream setup failed: {e}") from e
    logger.debug(f"allocated streams for {spec.program}: {streams.endpoints()}")
    return streams


def release_endpoints(endpoints: List[Endpoint]) -> None:
    """Finalizer backstop: close anything a dropped handle still owns."""
    for ep in endpoints:
        if not ep.closed:
            logger.debug(f"closing leaked endpoint {ep!r}")
            ep.close()


__all__ = [
    "Endpoint",
    "PtyEndpoint",
    "StreamSet",
    "allocate_streams",
    "open_pty",
    "release_endpoints",
]
