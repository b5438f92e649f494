#!/usr/bin/env python3
"""
subcommander: run a program (optionally through sudo/doas) and exit with its status

Commands:
  subcommander run  -- PROGRAM [ARGS...]   # spawn, optionally capture/feed/cap/time-limit
  subcommander sudo -- PROGRAM [ARGS...]   # run through an elevation wrapper on a pty

Exit status is the child's (128 + N when killed by signal N), 125 when
subcommander itself fails, 126 when the wrapper rejects the credential.
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import shlex
import sys
from pathlib import Path
from typing import List, Optional
import logging

from subcommander.core.command import Command
from subcommander.core.communicate import echo_output
from subcommander.core.configuration import SubcommanderConfig, load_config
from subcommander.core.errors import CommandError, ConfigurationError, CredentialRejected
from subcommander.core.models import ExitResult, StreamMode
from subcommander.core.async_process import run_async
from subcommander.core.privileged import run_privileged, run_privileged_async
from subcommander.core.sync_process import run
from subcommander.utils.logging_config import setup_logging
from subcommander.wrappers import ElevationWrapper, PrefixWrapper, get_wrapper

EXIT_INTERNAL = 125
EXIT_REJECTED = 126
PASSWORD_ENV = "SUBCOMMANDER_PASSWORD"

logger = logging.getLogger("subcommander")


def _command_argv(args: argparse.Namespace) -> List[str]:
    argv = list(args.command)
    if argv and argv[0] == "--":
        argv = argv[1:]
    return argv


def _read_input(source: Optional[str]) -> Optional[bytes]:
    if source is None:
        return None
    if source == "-":
        return sys.stdin.buffer.read()
    return Path(source).read_bytes()


def render_summary(result: ExitResult) -> str:
    """Rich table describing ``result``, exported as text."""
    from rich.console import Console
    from rich.table import Table
    from rich.text import Text

    table = Table(title="subcommander", show_lines=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    status_style = "bold green" if result.success else "bold red"
    table.add_row("argv", shlex.join(result.args))
    table.add_row("pid", str(result.pid or "-"))
    table.add_row("exit", Text(str(result.exit_code), style=status_style))
    table.add_row("signal", str(result.signal) if result.signal else "-")
    table.add_row("duration", f"{result.duration:.3f}s")
    if result.stdout is not None:
        table.add_row("stdout", f"{len(result.stdout)} bytes")
    if result.stderr is not None:
        table.add_row("stderr", f"{len(result.stderr)} bytes")
    table.add_row("truncated", Text("yes", style="yellow") if result.truncated else "no")
    table.add_row("timed out", Text("yes", style="magenta") if result.timed_out else "no")

    console = Console(file=sys.stderr, record=True)
    console.print(table)
    return console.export_text(clear=False)


def _emit(result: ExitResult, *, quiet: bool, echoed: bool) -> None:
    if quiet or echoed:
        return
    if result.stdout:
        sys.stdout.buffer.write(result.stdout)
        sys.stdout.buffer.flush()
    if result.stderr:
        sys.stderr.buffer.write(result.stderr)
        sys.stderr.buffer.flush()


def cmd_run(args: argparse.Namespace, cfg: SubcommanderConfig) -> int:
    argv = _command_argv(args)
    if not argv:
        print("subcommander run: missing PROGRAM", file=sys.stderr)
        return EXIT_INTERNAL

    cmd = Command(argv[0]).args(*argv[1:])
    for item in args.env:
        name, _, value = item.partition("=")
        cmd.env(name, value)
    if args.clear_env:
        cmd.clear_env()
    if args.cwd:
        cmd.cwd(args.cwd)
    data = _read_input(args.input)
    if data is not None:
        cmd.stdin(StreamMode.PIPE)
    if args.capture:
        cmd.capture()
    spec = cmd.build()

    # captured output is echoed live unless --quiet
    echo = args.capture and not args.quiet
    options = cfg.communicate.run_options(max_output=args.max_output, timeout=args.timeout)
    on_output = echo_output if echo else None
    logger.info(f"run {spec.argv} capture={args.capture} async={args.use_async}")
    if args.use_async:
        result = asyncio.run(run_async(spec, data, options=options, on_output=on_output))
    else:
        result = run(spec, data, options=options, on_output=on_output)

    _emit(result, quiet=args.quiet, echoed=echo)
    if result.truncated and not result.timed_out:
        logger.warning(f"output of {spec.program} truncated at {options.max_output} bytes")
    if result.timed_out:
        logger.warning(f"{spec.program} killed after {options.timeout}s")
    if args.summary:
        render_summary(result)
    return result.exit_code


def _resolve_wrapper(args: argparse.Namespace, cfg: SubcommanderConfig) -> ElevationWrapper:
    if args.wrapper_prefix:
        return PrefixWrapper(shlex.split(args.wrapper_prefix))
    return get_wrapper(args.wrapper or cfg.privileged.wrapper)


def cmd_sudo(args: argparse.Namespace, cfg: SubcommanderConfig) -> int:
    argv = _command_argv(args)
    if not argv:
        print("subcommander sudo: missing PROGRAM", file=sys.stderr)
        return EXIT_INTERNAL
    spec = Command(argv[0]).args(*argv[1:]).build()
    wrapper = _resolve_wrapper(args, cfg)
    prompt = cfg.privileged.prompt_config(
        prompt_timeout=args.prompt_timeout,
        require_prompt=True if args.require_prompt else None,
        timeout=args.timeout,
    )
    credential = os.environ.get(PASSWORD_ENV)
    if credential is None:
        credential = getpass.getpass(f"[subcommander] password for {wrapper.name}: ")

    logger.info(f"privileged run {spec.argv} via {wrapper!r} async={args.use_async}")
    if args.use_async:
        result = asyncio.run(run_privileged_async(spec, credential, prompt, wrapper))
    else:
        result = run_privileged(spec, credential, prompt, wrapper)

    _emit(result, quiet=args.quiet, echoed=False)
    if result.timed_out:
        logger.warning(f"{spec.program} killed after {prompt.timeout}s")
    if args.summary:
        render_summary(result)
    return result.exit_code


def _env_item(value: str) -> str:
    name, sep, _ = value.partition("=")
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {value!r}")
    return value


def _positive_int(value: str) -> int:
    n = int(value)
    if n <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return n


def _positive_float(value: str) -> float:
    n = float(value)
    if n <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return n


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML config file (default: $SUBCOMMANDER_CONFIG)")
    common.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default=None)
    common.add_argument("--async", dest="use_async", action="store_true", default=False, help="Use the asyncio strategy")
    common.add_argument("--timeout", type=_positive_float, default=None, help="Kill the child after this many seconds")
    common.add_argument("--quiet", action="store_true", default=False, help="Do not print captured output")
    common.add_argument("--summary", action="store_true", default=False, help="Print a result table on stderr")

    parser = argparse.ArgumentParser(prog="subcommander", description="Run programs with captured I/O or through sudo/doas")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", parents=[common], help="Run a program")
    p_run.add_argument("--cwd", default=None, help="Working directory for the child")
    p_run.add_argument("--env", action="append", type=_env_item, default=[], metavar="NAME=VALUE", help="Environment override (repeatable)")
    p_run.add_argument("--clear-env", action="store_true", default=False, help="Start from an empty environment")
    p_run.add_argument("--capture", action="store_true", default=False, help="Pipe stdout/stderr through subcommander")
    p_run.add_argument("--input", default=None, metavar="FILE", help="Feed FILE (or - for stdin) to the child")
    p_run.add_argument("--max-output", type=_positive_int, default=None, help="Cap on captured bytes")
    p_run.add_argument("command", nargs=argparse.REMAINDER, help="-- PROGRAM [ARGS...]")
    p_run.set_defaults(func=cmd_run)

    p_sudo = sub.add_parser("sudo", parents=[common], help="Run a program through an elevation wrapper")
    p_sudo.add_argument("--wrapper", choices=["sudo", "doas"], default=None)
    p_sudo.add_argument("--wrapper-prefix", default=None, help="Custom wrapper argv, e.g. 'pkexec --disable-internal-agent'")
    p_sudo.add_argument("--prompt-timeout", type=_positive_float, default=None, help="Seconds to wait for a password prompt")
    p_sudo.add_argument("--require-prompt", action="store_true", default=False, help="Fail if the wrapper never prompts")
    p_sudo.add_argument("command", nargs=argparse.REMAINDER, help="-- PROGRAM [ARGS...]")
    p_sudo.set_defaults(func=cmd_sudo)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return EXIT_INTERNAL

    try:
        cfg = load_config(Path(args.config) if args.config else None)
    except ConfigurationError as e:
        print(f"subcommander: {e.reason}", file=sys.stderr)
        return EXIT_INTERNAL
    setup_logging(
        level=args.log_level or cfg.logging.level,
        log_file=cfg.logging.file_path,
        console_level=cfg.logging.console_level,
    )

    try:
        return int(args.func(args, cfg))
    except CredentialRejected as e:
        logger.error(f"{args.cmd} failed: {e.reason}")
        return EXIT_REJECTED
    except (CommandError, ValueError, OSError) as e:
        logger.error(f"{args.cmd} failed: {e}")
        return EXIT_INTERNAL


if __name__ == "__main__":
    sys.exit(main())
