"""
Core modules: command descriptor, stream plumbing, sync/async execution and the privileged pty flow.
"""

from .errors import (
    CommandError, InvalidCommand, StreamSetupFailed, PtyUnavailable, SpawnFailed,
    WriteFailed, ReadFailed, ReadTimeout, WaitTimeout, AlreadyWaited,
    CommunicateFailed, CredentialRejected, PromptTimeout, ConfigurationError,
)
from .models import StreamMode, CommandSpec, ExitResult, RunOptions
from .command import Command, make_spec
from .sync_process import SyncProcess, spawn, run, CommandThread
from .async_process import AsyncProcess, spawn_async, run_async
from .privileged import (
    PrivilegedState, PromptAction, PromptConfig, PromptDetector,
    run_privileged, run_privileged_async,
)
from .configuration import SubcommanderConfig, ConfigurationLoader, load_config

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
    "StreamMode",
    "CommandSpec",
    "ExitResult",
    "RunOptions",
    "Command",
    "make_spec",
    "SyncProcess",
    "spawn",
    "run",
    "CommandThread",
    "AsyncProcess",
    "spawn_async",
    "run_async",
    "PrivilegedState",
    "PromptAction",
    "PromptConfig",
    "PromptDetector",
    "run_privileged",
    "run_privileged_async",
    "SubcommanderConfig",
    "ConfigurationLoader",
    "load_config",
]
