"""
Synchronous execution strategy: subprocess.Popen plus blocking I/O on the endpoints.

Public API:
  - spawn(spec) -> SyncProcess
  - run(spec, input=None, ...) -> ExitResult
  - CommandThread(spec, ...)  (spawn + communicate on a background thread)
"""

from __future__ import annotations

import logging
import os
import selectors
import subprocess
import threading
import time
import weakref
from typing import Dict, Optional, Tuple

from .communicate import DEFAULT_CHUNK_SIZE, CommunicateSession, OutputCallback, echo_output
from .errors import (
    AlreadyWaited,
    CommunicateFailed,
    InvalidCommand,
    ReadFailed,
    ReadTimeout,
    SpawnFailed,
    WaitTimeout,
    WriteFailed,
)
from .models import CommandSpec, ExitResult, RunOptions
from .streams import Endpoint, PtyEndpoint, StreamSet, allocate_streams, release_endpoints

logger = logging.getLogger(__name__)


def spawn(spec: CommandSpec) -> "SyncProcess":
    """Start ``spec`` and return its handle. The caller owns (and must close) it."""
    if not isinstance(spec, CommandSpec):
        raise InvalidCommand(f"spawn expects a CommandSpec, got {type(spec).__name__}")
    streams = allocate_streams(spec)
    try:
        popen = subprocess.Popen(
            spec.argv,
            cwd=spec.cwd,
            env=spec.resolved_env(),
            close_fds=True,
            **streams.popen_kwargs(),
        )
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        streams.close_all()
        raise SpawnFailed(f"could not spawn {spec.program!r}: {e}") from e
    streams.close_child_ends()
    logger.debug(f"spawned pid={popen.pid} argv={spec.argv}")
    return SyncProcess(popen, spec, streams)


def _wait_readable(fd: int, timeout: Optional[float]) -> bool:
    with selectors.DefaultSelector() as sel:
        sel.register(fd, selectors.EVENT_READ)
        return bool(sel.select(timeout))


def _set_interest(sel: selectors.BaseSelector, wanted: Dict[int, int]) -> None:
    for key in list(sel.get_map().values()):
        if key.fd not in wanted:
            sel.unregister(key.fd)
    for fd, mask in wanted.items():
        try:
            key = sel.get_key(fd)
        except KeyError:
            sel.register(fd, mask)
        else:
            if key.events != mask:
                sel.modify(fd, mask)


class SyncProcess:
    """Handle for a running child driven with thread-blocking calls.

    Exactly one owner; not shareable between threads without external locking.
    """

    def __init__(self, popen: subprocess.Popen, spec: CommandSpec, streams: StreamSet):
        self._popen = popen
        self.spec = spec
        self._streams = streams
        self.stdin: Optional[Endpoint] = streams.stdin
        self.stdout: Optional[Endpoint] = streams.stdout
        self.stderr: Optional[Endpoint] = streams.stderr
        self._waited = False
        self._line_open = False
        self._started = time.monotonic()
        self._finalizer = weakref.finalize(self, release_endpoints, streams.endpoints())

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def args(self) -> list[str]:
        return self.spec.argv

    @property
    def waited(self) -> bool:
        return self._waited

    def poll(self) -> Optional[int]:
        """Popen-style returncode, or None while running."""
        return self._popen.poll()

    # ----- stdin -----

    def write(self, data: bytes) -> int:
        """Write all of ``data`` to stdin; returns the number of bytes written."""
        ep = self.stdin
        if ep is None:
            raise WriteFailed("stdin is not piped or already closed")
        view = memoryview(data)
        total = 0
        while total < len(view):
            total += ep.write_some(view[total:])
        if total:
            self._line_open = bytes(view[-1:]) != b"\n"
        return total

    def send_line(self, text: str) -> int:
        """Write ``text`` plus a newline; fails if the child already exited."""
        rc = self.poll()
        if rc is not None:
            raise WriteFailed(f"process {self.pid} already exited with status {rc}")
        return self.write((text + "\n").encode())

    def close_stdin(self) -> None:
        """Signal end-of-input. On a pty this sends the terminal EOF character."""
        ep, self.stdin = self.stdin, None
        if ep is None or ep.closed:
            return
        if isinstance(ep, PtyEndpoint):
            try:
                ep.send_eof(self._line_open)
            except (WriteFailed, BlockingIOError) as e:
                logger.debug(f"could not send EOF to pty of pid={self.pid}: {e}")
        else:
            ep.close()

    # ----- stdout / stderr -----

    def _read(self, ep: Optional[Endpoint], name: str, size: int, timeout: Optional[float]) -> bytes:
        if ep is None:
            raise ReadFailed(f"{name} is not piped")
        if ep.closed:
            raise ReadFailed(f"{name} is closed")
        if timeout is not None and not _wait_readable(ep.fd, timeout):
            raise ReadTimeout(f"no data on {name} within {timeout}s")
        return ep.read_some(size)

    def read_stdout(self, size: int = DEFAULT_CHUNK_SIZE, timeout: Optional[float] = None) -> bytes:
        """Block until stdout has data; returns up to ``size`` bytes, b"" at end-of-stream."""
        return self._read(self.stdout, "stdout", size, timeout)

    def read_stderr(self, size: int = DEFAULT_CHUNK_SIZE, timeout: Optional[float] = None) -> bytes:
        return self._read(self.stderr, "stderr", size, timeout)

    # ----- lifecycle -----

    def _result(self, returncode: int, **kwargs) -> ExitResult:
        self._waited = True
        result = ExitResult.from_status(
            returncode,
            args=self.args,
            pid=self.pid,
            duration=time.monotonic() - self._started,
            **kwargs,
        )
        logger.debug(f"reaped pid={self.pid} returncode={result.returncode} signal={result.signal}")
        return result

    def wait(self, timeout: Optional[float] = None) -> ExitResult:
        """Block until the child exits. A second call raises AlreadyWaited."""
        if self._waited:
            raise AlreadyWaited(self.pid)
        try:
            rc = self._popen.wait(timeout)
        except subprocess.TimeoutExpired as e:
            raise WaitTimeout(f"process {self.pid} still running after {timeout}s") from e
        return self._result(rc)

    def terminate(self) -> None:
        if self._waited or self.poll() is not None:
            return
        try:
            self._popen.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        if self._waited or self.poll() is not None:
            return
        try:
            self._popen.kill()
        except ProcessLookupError:
            pass

    def communicate(
        self,
        input: Optional[bytes] = None,
        *,
        max_output: Optional[int] = None,
        timeout: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_output: Optional[OutputCallback] = None,
    ) -> ExitResult:
        """Feed ``input``, drain stdout/stderr until EOF, then wait.

        Writing and reading are multiplexed on non-blocking descriptors, so a child
        that fills its output pipe while we still have input to send cannot deadlock
        the exchange.
        """
        if self._waited:
            raise CommunicateFailed(f"process {self.pid} has already been waited on")
        if input and self.stdin is None:
            raise CommunicateFailed("input given but stdin is not piped")
        try:
            session = CommunicateSession(input, max_output=max_output, chunk_size=chunk_size, on_output=on_output)
        except (TypeError, ValueError) as e:
            raise CommunicateFailed(str(e)) from e

        readers: Dict[int, Tuple[str, Endpoint]] = {}
        for name, ep in (("stdout", self.stdout), ("stderr", self.stderr)):
            if ep is not None and not ep.closed:
                session.track(name)
                readers[ep.fd] = (name, ep)
        if self.stdin is not None and not session.has_input:
            self.close_stdin()

        deadline = None if timeout is None else time.monotonic() + timeout
        touched = {ep.fd: ep for ep in self._streams.endpoints() if not ep.closed}
        try:
            for fd in touched:
                os.set_blocking(fd, False)
            self._pump(session, readers, deadline)
        except ReadFailed as e:
            self._abort()
            raise CommunicateFailed(f"reading from process {self.pid} failed: {e.reason}") from e
        finally:
            for fd, ep in touched.items():
                if not ep.closed:
                    os.set_blocking(fd, True)

        if session.truncated or session.timed_out:
            # stop reading: the child sees a broken pipe if it keeps writing
            for _, ep in readers.values():
                ep.close()
            self.close_stdin()
        if session.timed_out:
            self.kill()

        remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
        try:
            rc = self._popen.wait(remaining)
        except subprocess.TimeoutExpired:
            session.timed_out = True
            self.kill()
            rc = self._popen.wait()
        self._release()
        return self._result(
            rc,
            stdout=session.output("stdout"),
            stderr=session.output("stderr"),
            truncated=session.truncated or session.timed_out,
            timed_out=session.timed_out,
        )

    def _pump(self, session: CommunicateSession, readers: Dict[int, Tuple[str, Endpoint]], deadline: Optional[float]) -> None:
        with selectors.DefaultSelector() as sel:
            while readers or self.stdin is not None:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    session.timed_out = True
                    return
                wanted = {fd: selectors.EVENT_READ for fd in readers}
                if self.stdin is not None:
                    wanted[self.stdin.fd] = wanted.get(self.stdin.fd, 0) | selectors.EVENT_WRITE
                _set_interest(sel, wanted)

                for key, events in sel.select(remaining):
                    fd = key.fd
                    if events & selectors.EVENT_WRITE and self.stdin is not None and self.stdin.fd == fd:
                        self._pump_input(session)
                    if events & selectors.EVENT_READ and fd in readers:
                        name, ep = readers[fd]
                        try:
                            data = ep.read_some(session.chunk_size)
                        except BlockingIOError:
                            continue
                        if not data:
                            del readers[fd]
                        elif not session.feed(name, data):
                            return

    def _pump_input(self, session: CommunicateSession) -> None:
        try:
            written = self.stdin.write_some(session.next_chunk())
        except BlockingIOError:
            return
        except WriteFailed as e:
            session.abandon_input(e.reason)
        else:
            session.advance(written)
        if session.input_done:
            self._line_open = session.line_open
            self.close_stdin()

    def _release(self) -> None:
        self.stdin = None
        for ep in self._streams.endpoints():
            ep.close()
        self._finalizer.detach()

    def _abort(self) -> None:
        """Release the endpoints, then kill and reap the child."""
        self._release()
        self.kill()
        self._popen.wait()
        self._waited = True

    def close(self) -> None:
        """Release every parent-side descriptor. Does not kill a running child."""
        self._release()
        if not self._waited and self.poll() is None:
            logger.debug(f"closing handle of pid={self.pid} while it is still running")

    def __enter__(self) -> "SyncProcess":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._release()
        if not self._waited:
            if exc_type is not None:
                self.kill()
            self._popen.wait()
            self._waited = True

    def __repr__(self) -> str:
        return f"<SyncProcess pid={self.pid} argv={self.args!r} waited={self._waited}>"


def run(
    spec: CommandSpec,
    input: Optional[bytes] = None,
    *,
    options: Optional[RunOptions] = None,
    on_output: Optional[OutputCallback] = None,
) -> ExitResult:
    """Spawn, communicate and release in one call.

    A password in ``options`` is written to stdin as the first line, so stdin must be piped.
    """
    options = options or RunOptions()
    input = options.initial_input(input)
    if on_output is None and options.showout:
        on_output = echo_output
    with spawn(spec) as proc:
        return proc.communicate(
            input,
            max_output=options.max_output,
            timeout=options.timeout,
            chunk_size=options.chunk_size,
            on_output=on_output,
        )


class CommandThread(threading.Thread):
    """Run a command to completion on a background thread.

    ``result()`` blocks until it finishes and returns the ExitResult, or re-raises
    whatever the run raised.
    """

    def __init__(self, spec: CommandSpec, input: Optional[bytes] = None, *, options: Optional[RunOptions] = None, name: Optional[str] = None):
        super().__init__(name=name or f"command-{spec.program}", daemon=True)
        self.spec = spec
        self.input = input
        self.options = options
        self._done = threading.Event()
        self._result: Optional[ExitResult] = None
        self._error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self._result = run(self.spec, self.input, options=self.options)
        except Exception as ex:
            logger.debug(f"{self.name}: run failed: {ex}")
            self._error = ex
        finally:
            self._done.set()

    def result(self, timeout: Optional[float] = None) -> ExitResult:
        if not self._done.wait(timeout):
            raise WaitTimeout(f"{self.name} did not finish within {timeout}s")
        if self._error is not None:
            raise self._error
        return self._result


__all__ = ["SyncProcess", "spawn", "run", "CommandThread"]
