"""
Pty-mediated privileged execution.

The target command runs through an elevation wrapper (sudo, doas, ...) whose
stdin/stdout/stderr are all bound to one pseudo-terminal. Output read from the
pty master is scanned for a password prompt; when one shows up the credential is
typed in, and the remaining output is the command's own.

Prompt detection is a pure state machine (PromptDetector) fed with the bytes read
from the master, so it can be driven with synthetic output. run_privileged and
run_privileged_async wrap it around the sync and async handles.
"""

from __future__ import annotations

import logging
import re
import time
from enum import Enum
from typing import List, Optional, Pattern, Union

from pydantic import BaseModel, Field, field_validator

from subcommander.wrappers import ElevationWrapper, get_wrapper

from .errors import CredentialRejected, PromptTimeout, ReadTimeout
from .models import CommandSpec, ExitResult
from .async_process import spawn_async
from .sync_process import spawn

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_PATTERNS = [r"[Pp]assword[^\n]*:\s*$"]
DEFAULT_REJECTION_PATTERNS = [
    r"Sorry, try again",
    r"[Aa]uthentication failure",
    r"incorrect password",
]

# prompts are anchored at the end of the output seen so far; only the tail is searched
_PROMPT_TAIL = 4096


class PrivilegedState(Enum):
    IDLE = "idle"
    PTY_ALLOCATED = "pty_allocated"
    CHILD_SPAWNED = "child_spawned"
    AWAITING_PROMPT_OR_OUTPUT = "awaiting_prompt_or_output"
    CREDENTIAL_SENT = "credential_sent"
    AWAITING_COMPLETION = "awaiting_completion"
    COMPLETE = "complete"
    REJECTED = "rejected"


class PromptAction(Enum):
    """What the driver must do after feeding the detector."""
    NONE = "none"
    SEND_CREDENTIAL = "send_credential"
    REJECTED = "rejected"
    PROMPT_TIMEOUT = "prompt_timeout"


class PromptConfig(BaseModel):
    """Prompt-detection settings for one privileged run."""

    prompt_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_PROMPT_PATTERNS))
    rejection_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_REJECTION_PATTERNS))
    # seconds to wait for a prompt before treating all output as command output
    prompt_timeout: float = 5.0
    require_prompt: bool = False
    # overall bound on the run; None waits for the child indefinitely
    timeout: Optional[float] = None
    rejection_scan_limit: int = 4096
    chunk_size: int = 4096

    @field_validator("prompt_patterns", "rejection_patterns")
    @classmethod
    def patterns_compile(cls, v: List[str]) -> List[str]:
        for p in v:
            try:
                re.compile(p)
            except re.error as e:
                raise ValueError(f"invalid pattern {p!r}: {e}")
        return v

    @field_validator("prompt_patterns")
    @classmethod
    def prompt_patterns_present(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one prompt pattern is required")
        return v

    @field_validator("prompt_timeout", "rejection_scan_limit", "chunk_size")
    @classmethod
    def positive(cls, v):
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("timeout")
    @classmethod
    def timeout_positive(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("timeout must be positive")
        return v


class PromptDetector:
    """State machine over the bytes read from the pty master.

    Text seen before the prompt (banners, the prompt itself) is not part of the
    command output. If no prompt ever shows up, everything seen is output.
    """

    def __init__(self, config: Optional[PromptConfig] = None):
        self.config = config or PromptConfig()
        self.state = PrivilegedState.IDLE
        self._prompts: List[Pattern[str]] = [re.compile(p) for p in self.config.prompt_patterns]
        self._rejections: List[Pattern[str]] = [re.compile(p) for p in self.config.rejection_patterns]
        self._pending = bytearray()
        self._output = bytearray()
        self._scan_done = False
        self._strip_newline = False
        # prompt regex that matched; seeing it again means the answer was refused
        self._answered: Optional[Pattern[str]] = None

    @property
    def output(self) -> bytes:
        return bytes(self._output)

    def _move(self, new: PrivilegedState) -> None:
        logger.debug(f"privileged flow: {self.state.value} -> {new.value}")
        self.state = new

    def _expect(self, *states: PrivilegedState) -> None:
        if self.state not in states:
            raise RuntimeError(f"unexpected privileged-flow event in state {self.state.value}")

    def pty_allocated(self) -> None:
        self._expect(PrivilegedState.IDLE)
        self._move(PrivilegedState.PTY_ALLOCATED)

    def spawned(self) -> None:
        self._expect(PrivilegedState.PTY_ALLOCATED)
        self._move(PrivilegedState.CHILD_SPAWNED)

    def listen(self) -> None:
        self._expect(PrivilegedState.CHILD_SPAWNED)
        self._move(PrivilegedState.AWAITING_PROMPT_OR_OUTPUT)

    def _matches_prompt(self, buf: bytes) -> Optional[re.Match]:
        text = bytes(buf[-_PROMPT_TAIL:]).decode(errors="replace")
        for rx in self._prompts:
            m = rx.search(text)
            if m:
                return m
        return None

    def feed(self, data: bytes) -> PromptAction:
        """Consume one chunk read from the master."""
        if self.state is PrivilegedState.AWAITING_PROMPT_OR_OUTPUT:
            self._pending.extend(data)
            m = self._matches_prompt(self._pending)
            if m:
                self._answered = m.re
                self._pending.clear()
                self._move(PrivilegedState.CREDENTIAL_SENT)
                return PromptAction.SEND_CREDENTIAL
            return PromptAction.NONE
        if self.state is PrivilegedState.AWAITING_COMPLETION:
            if self._strip_newline:
                # the helper echoes a bare newline after reading the credential
                if data.startswith(b"\r\n"):
                    data = data[2:]
                elif data.startswith(b"\n"):
                    data = data[1:]
                self._strip_newline = False
            self._output.extend(data)
            return self._scan_for_rejection()
        if self.state is PrivilegedState.COMPLETE:
            self._output.extend(data)
            return PromptAction.NONE
        raise RuntimeError(f"output fed in state {self.state.value}")

    def _scan_for_rejection(self) -> PromptAction:
        """Look for a refused credential in the helper's reply.

        The reply is every line before the target's first own line: blank lines and
        rejection messages. An unterminated repeat of the prompt that was answered
        also means the credential was refused.
        """
        if self._scan_done:
            return PromptAction.NONE
        limit = self.config.rejection_scan_limit
        *lines, partial = bytes(self._output[:limit]).decode(errors="replace").split("\n")
        for line in lines:
            if not line.strip():
                continue
            if self._is_rejection(line):
                return self._reject()
            # the target has taken over the terminal
            self._scan_done = True
            return PromptAction.NONE
        if self._is_rejection(partial) or (self._answered is not None and self._answered.search(partial)):
            return self._reject()
        if len(self._output) >= limit:
            self._scan_done = True
        return PromptAction.NONE

    def _is_rejection(self, text: str) -> bool:
        return any(rx.search(text) for rx in self._rejections)

    def _reject(self) -> PromptAction:
        self._move(PrivilegedState.REJECTED)
        return PromptAction.REJECTED

    def credential_written(self) -> None:
        self._expect(PrivilegedState.CREDENTIAL_SENT)
        self._strip_newline = True
        self._move(PrivilegedState.AWAITING_COMPLETION)

    def window_expired(self) -> PromptAction:
        """The prompt window closed without a prompt."""
        self._expect(PrivilegedState.AWAITING_PROMPT_OR_OUTPUT)
        if self.config.require_prompt:
            return PromptAction.PROMPT_TIMEOUT
        self._output.extend(self._pending)
        self._pending.clear()
        self._move(PrivilegedState.AWAITING_COMPLETION)
        self._scan_done = True
        return PromptAction.NONE

    def eof(self) -> PromptAction:
        """The master reported end-of-stream: every slave descriptor is closed."""
        if self.state is PrivilegedState.AWAITING_PROMPT_OR_OUTPUT:
            if self.config.require_prompt:
                return PromptAction.PROMPT_TIMEOUT
            self._output.extend(self._pending)
            self._pending.clear()
        self._move(PrivilegedState.COMPLETE)
        return PromptAction.NONE


def _resolve_wrapper(wrapper: Union[str, ElevationWrapper]) -> ElevationWrapper:
    return get_wrapper(wrapper) if isinstance(wrapper, str) else wrapper


class _Clock:
    """Overall and prompt-window deadlines of one run."""

    def __init__(self, config: PromptConfig):
        start = time.monotonic()
        self.deadline = None if config.timeout is None else start + config.timeout
        self.prompt_deadline = start + config.prompt_timeout

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def read_timeout(self, detector: PromptDetector) -> Optional[float]:
        now = time.monotonic()
        wait = None if self.deadline is None else self.deadline - now
        if detector.state is PrivilegedState.AWAITING_PROMPT_OR_OUTPUT:
            window = self.prompt_deadline - now
            wait = window if wait is None else min(wait, window)
        return None if wait is None else max(wait, 0.0)

    def window_closed(self) -> bool:
        return time.monotonic() >= self.prompt_deadline


def _check(action: PromptAction, argv: List[str]) -> None:
    if action is PromptAction.REJECTED:
        logger.warning(f"credential rejected by {argv[0]}")
        raise CredentialRejected(f"{argv[0]} rejected the credential")
    if action is PromptAction.PROMPT_TIMEOUT:
        logger.warning(f"no password prompt from {argv[0]}")
        raise PromptTimeout(f"{argv[0]} did not prompt for a credential")


def _prepare(spec: CommandSpec, config: Optional[PromptConfig], wrapper: Union[str, ElevationWrapper]):
    elevation = _resolve_wrapper(wrapper)
    config = elevation.prompt_config(config or PromptConfig())
    return elevation.wrap(spec), PromptDetector(config)


def _finish(result: ExitResult, detector: PromptDetector, timed_out: bool) -> ExitResult:
    return result.model_copy(update={
        "stdout": detector.output,
        "stderr": None,
        "timed_out": timed_out,
        "truncated": timed_out,
    })


def run_privileged(
    spec: CommandSpec,
    credential: str,
    config: Optional[PromptConfig] = None,
    wrapper: Union[str, ElevationWrapper] = "sudo",
) -> ExitResult:
    """Run ``spec`` through ``wrapper`` on a pty, answering its password prompt.

    Raises PtyUnavailable, CredentialRejected or PromptTimeout. A rejected or
    prompt-less child is killed and reaped before the error propagates.
    """
    target, detector = _prepare(spec, config, wrapper)
    cfg = detector.config
    with spawn(target) as proc:
        # spawn allocated the pty
        detector.pty_allocated()
        detector.spawned()
        detector.listen()
        clock = _Clock(cfg)
        timed_out = False
        while detector.state is not PrivilegedState.COMPLETE:
            if clock.expired():
                timed_out = True
                break
            if detector.state is PrivilegedState.AWAITING_PROMPT_OR_OUTPUT and clock.window_closed():
                _check(detector.window_expired(), target.argv)
                continue
            try:
                data = proc.read_stdout(cfg.chunk_size, timeout=clock.read_timeout(detector))
            except ReadTimeout:
                continue
            action = detector.feed(data) if data else detector.eof()
            if action is PromptAction.SEND_CREDENTIAL:
                proc.write((credential + "\n").encode())
                detector.credential_written()
            else:
                _check(action, target.argv)
        if timed_out:
            logger.warning(f"privileged run of {target.argv} timed out after {cfg.timeout}s")
            proc.kill()
        return _finish(proc.wait(), detector, timed_out)


async def run_privileged_async(
    spec: CommandSpec,
    credential: str,
    config: Optional[PromptConfig] = None,
    wrapper: Union[str, ElevationWrapper] = "sudo",
) -> ExitResult:
    """Coroutine counterpart of :func:`run_privileged`."""
    target, detector = _prepare(spec, config, wrapper)
    cfg = detector.config
    async with await spawn_async(target) as proc:
        # spawn allocated the pty
        detector.pty_allocated()
        detector.spawned()
        detector.listen()
        clock = _Clock(cfg)
        timed_out = False
        while detector.state is not PrivilegedState.COMPLETE:
            if clock.expired():
                timed_out = True
                break
            if detector.state is PrivilegedState.AWAITING_PROMPT_OR_OUTPUT and clock.window_closed():
                _check(detector.window_expired(), target.argv)
                continue
            try:
                data = await proc.read_stdout(cfg.chunk_size, timeout=clock.read_timeout(detector))
            except ReadTimeout:
                continue
            action = detector.feed(data) if data else detector.eof()
            if action is PromptAction.SEND_CREDENTIAL:
                await proc.write((credential + "\n").encode())
                detector.credential_written()
            else:
                _check(action, target.argv)
        if timed_out:
            logger.warning(f"privileged run of {target.argv} timed out after {cfg.timeout}s")
            proc.kill()
        return _finish(await proc.wait(), detector, timed_out)


__all__ = [
    "PrivilegedState",
    "PromptAction",
    "PromptConfig",
    "PromptDetector",
    "run_privileged",
    "run_privileged_async",
]
