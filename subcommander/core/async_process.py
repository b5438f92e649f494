"""
Asynchronous execution strategy on asyncio.

Spawning and child-exit notification go through asyncio.create_subprocess_exec;
stream I/O uses the same endpoints as the synchronous strategy, switched to
non-blocking mode and awaited with loop.add_reader / loop.add_writer.

Every await point is cancellation-safe: a cancelled read consumes nothing, a
cancelled write keeps whatever it already wrote, and the loop registration is
always removed. Callers must keep to one reader per stream and one writer for
stdin; concurrent writers are not arbitrated.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import time
import weakref
from typing import Callable, List, Optional

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


async def spawn_async(spec: CommandSpec) -> "AsyncProcess":
    """Start ``spec`` on the running loop and return its handle."""
    if not isinstance(spec, CommandSpec):
        raise InvalidCommand(f"spawn expects a CommandSpec, got {type(spec).__name__}")
    streams = allocate_streams(spec)
    try:
        proc = await asyncio.create_subprocess_exec(
            *spec.argv,
            cwd=spec.cwd,
            env=spec.resolved_env(),
            close_fds=True,
            **streams.popen_kwargs(),
        )
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        streams.close_all()
        raise SpawnFailed(f"could not spawn {spec.program!r}: {e}") from e
    except BaseException:
        streams.close_all()
        raise
    streams.close_child_ends()
    logger.debug(f"spawned pid={proc.pid} argv={spec.argv} (async)")
    return AsyncProcess(proc, spec, streams)


def _wake(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


async def _fd_ready(fd: int, add: Callable, remove: Callable) -> None:
    loop = asyncio.get_running_loop()
    fut = loop.create_future()
    add(fd, _wake, fut)
    try:
        await fut
    finally:
        remove(fd)


class AsyncProcess:
    """Handle for a running child driven from coroutines."""

    def __init__(self, proc: asyncio.subprocess.Process, spec: CommandSpec, streams: StreamSet):
        self._proc = proc
        self.spec = spec
        self._streams = streams
        self.stdin: Optional[Endpoint] = streams.stdin
        self.stdout: Optional[Endpoint] = streams.stdout
        self.stderr: Optional[Endpoint] = streams.stderr
        self._waited = False
        self._line_open = False
        self._started = time.monotonic()
        for ep in streams.endpoints():
            os.set_blocking(ep.fd, False)
        self._finalizer = weakref.finalize(self, release_endpoints, streams.endpoints())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def args(self) -> List[str]:
        return self.spec.argv

    @property
    def waited(self) -> bool:
        return self._waited

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    # ----- stdin -----

    async def write(self, data: bytes) -> int:
        """Write all of ``data``, suspending while the pipe is full."""
        ep = self.stdin
        if ep is None:
            raise WriteFailed("stdin is not piped or already closed")
        loop = asyncio.get_running_loop()
        view = memoryview(data)
        total = 0
        while total < len(view):
            try:
                total += ep.write_some(view[total:])
            except BlockingIOError:
                await _fd_ready(ep.fd, loop.add_writer, loop.remove_writer)
        if total:
            self._line_open = bytes(view[-1:]) != b"\n"
        return total

    async def send_line(self, text: str) -> int:
        if self._proc.returncode is not None:
            raise WriteFailed(f"process {self.pid} already exited with status {self._proc.returncode}")
        return await self.write((text + "\n").encode())

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

    async def _read(self, ep: Optional[Endpoint], name: str, size: int) -> bytes:
        if ep is None:
            raise ReadFailed(f"{name} is not piped")
        loop = asyncio.get_running_loop()
        while True:
            try:
                return ep.read_some(size)
            except BlockingIOError:
                await _fd_ready(ep.fd, loop.add_reader, loop.remove_reader)

    async def _read_with_timeout(self, ep: Optional[Endpoint], name: str, size: int, timeout: Optional[float]) -> bytes:
        if timeout is None:
            return await self._read(ep, name, size)
        try:
            return await asyncio.wait_for(self._read(ep, name, size), timeout)
        except asyncio.TimeoutError:
            raise ReadTimeout(f"no data on {name} within {timeout}s") from None

    async def read_stdout(self, size: int = DEFAULT_CHUNK_SIZE, timeout: Optional[float] = None) -> bytes:
        """Up to ``size`` bytes from stdout once available; b"" at end-of-stream."""
        return await self._read_with_timeout(self.stdout, "stdout", size, timeout)

    async def read_stderr(self, size: int = DEFAULT_CHUNK_SIZE, timeout: Optional[float] = None) -> bytes:
        return await self._read_with_timeout(self.stderr, "stderr", size, timeout)

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
        logger.debug(f"reaped pid={self.pid} returncode={result.returncode} signal={result.signal} (async)")
        return result

    async def wait(self, timeout: Optional[float] = None) -> ExitResult:
        """Suspend until the child exits. A second call raises AlreadyWaited."""
        if self._waited:
            raise AlreadyWaited(self.pid)
        try:
            if timeout is None:
                rc = await self._proc.wait()
            else:
                rc = await asyncio.wait_for(self._proc.wait(), timeout)
        except asyncio.TimeoutError:
            raise WaitTimeout(f"process {self.pid} still running after {timeout}s") from None
        return self._result(rc)

    def terminate(self) -> None:
        if self._waited or self._proc.returncode is not None:
            return
        try:
            self._proc.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        if self._waited or self._proc.returncode is not None:
            return
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass

    async def communicate(
        self,
        input: Optional[bytes] = None,
        *,
        max_output: Optional[int] = None,
        timeout: Optional[float] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_output: Optional[OutputCallback] = None,
    ) -> ExitResult:
        """Feed ``input``, drain stdout/stderr until EOF, then wait.

        One writer task and one reader task per output stream run concurrently, so
        output draining never waits behind pending input.
        """
        if self._waited:
            raise CommunicateFailed(f"process {self.pid} has already been waited on")
        if input and self.stdin is None:
            raise CommunicateFailed("input given but stdin is not piped")
        try:
            session = CommunicateSession(input, max_output=max_output, chunk_size=chunk_size, on_output=on_output)
        except (TypeError, ValueError) as e:
            raise CommunicateFailed(str(e)) from e

        capped = asyncio.Event()
        readers: List[Endpoint] = []
        tasks: List[asyncio.Task] = []
        for name, ep in (("stdout", self.stdout), ("stderr", self.stderr)):
            if ep is not None and not ep.closed:
                session.track(name)
                readers.append(ep)
                tasks.append(asyncio.ensure_future(self._drain(session, name, ep, capped)))
        if self.stdin is not None:
            if session.has_input:
                tasks.append(asyncio.ensure_future(self._feed(session)))
            else:
                self.close_stdin()

        deadline = None if timeout is None else time.monotonic() + timeout
        cap_waiter = asyncio.ensure_future(capped.wait())
        failure: Optional[ReadFailed] = None
        try:
            while True:
                pending = [t for t in tasks if not t.done()]
                if not pending or capped.is_set():
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    session.timed_out = True
                    break
                done, _ = await asyncio.wait([*pending, cap_waiter], timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    if t is not cap_waiter and not t.cancelled() and t.exception() is not None:
                        raise t.exception()
        except ReadFailed as e:
            failure = e
        finally:
            leftovers = [t for t in (*tasks, cap_waiter) if not t.done()]
            for t in leftovers:
                t.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)
        if failure is not None:
            await self._abort()
            raise CommunicateFailed(f"reading from process {self.pid} failed: {failure.reason}") from failure

        if session.truncated or session.timed_out:
            for ep in readers:
                ep.close()
            self.close_stdin()
        if session.timed_out:
            self.kill()

        remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
        try:
            if remaining is None:
                rc = await self._proc.wait()
            else:
                rc = await asyncio.wait_for(self._proc.wait(), remaining)
        except asyncio.TimeoutError:
            session.timed_out = True
            self.kill()
            rc = await self._proc.wait()
        self._release()
        return self._result(
            rc,
            stdout=session.output("stdout"),
            stderr=session.output("stderr"),
            truncated=session.truncated or session.timed_out,
            timed_out=session.timed_out,
        )

    async def _drain(self, session: CommunicateSession, name: str, ep: Endpoint, capped: asyncio.Event) -> None:
        while True:
            data = await self._read(ep, name, session.chunk_size)
            if not data:
                return
            if not session.feed(name, data):
                capped.set()
                return

    async def _feed(self, session: CommunicateSession) -> None:
        try:
            while not session.input_done:
                session.advance(await self.write(session.next_chunk()))
        except WriteFailed as e:
            session.abandon_input(e.reason)
        self._line_open = session.line_open
        self.close_stdin()

    def _release(self) -> None:
        self.stdin = None
        for ep in self._streams.endpoints():
            ep.close()
        self._finalizer.detach()

    async def _abort(self) -> None:
        """Release the endpoints, then kill and reap the child."""
        self._release()
        self.kill()
        await self._proc.wait()
        self._waited = True

    def close(self) -> None:
        """Release every parent-side descriptor. Does not kill a running child."""
        self._release()
        if not self._waited and self._proc.returncode is None:
            logger.debug(f"closing handle of pid={self.pid} while it is still running")

    async def __aenter__(self) -> "AsyncProcess":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._release()
        if not self._waited:
            if exc_type is not None:
                self.kill()
            await self._proc.wait()
            self._waited = True

    def __repr__(self) -> str:
        return f"<AsyncProcess pid={self.pid} argv={self.args!r} waited={self._waited}>"


async def run_async(
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
    async with await spawn_async(spec) as proc:
        return await proc.communicate(
            input,
            max_output=options.max_output,
            timeout=options.timeout,
            chunk_size=options.chunk_size,
            on_output=on_output,
        )


__all__ = ["AsyncProcess", "spawn_async", "run_async"]
