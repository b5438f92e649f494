import asyncio
import logging
import signal
import time

import pytest
from pydantic import ValidationError

from subcommander.core.command import make_spec
from subcommander.core.errors import CredentialRejected, PromptTimeout, SpawnFailed
from subcommander.core.privileged import (
    PrivilegedState,
    PromptAction,
    PromptConfig,
    PromptDetector,
    run_privileged,
    run_privileged_async,
)
from subcommander.wrappers import PrefixWrapper

from conftest import PY, needs_pty


def listening(config=None):
    d = PromptDetector(config)
    d.pty_allocated()
    d.spawned()
    d.listen()
    assert d.state is PrivilegedState.AWAITING_PROMPT_OR_OUTPUT
    return d


# ----- state machine, synthetic output -----

def test_prompt_then_output():
    d = PromptDetector()
    assert d.state is PrivilegedState.IDLE
    d.pty_allocated()
    assert d.state is PrivilegedState.PTY_ALLOCATED
    d.spawned()
    assert d.state is PrivilegedState.CHILD_SPAWNED
    d.listen()
    assert d.feed(b"Password: ") is PromptAction.SEND_CREDENTIAL
    assert d.state is PrivilegedState.CREDENTIAL_SENT
    d.credential_written()
    assert d.state is PrivilegedState.AWAITING_COMPLETION
    assert d.feed(b"\r\nhello\n") is PromptAction.NONE
    assert d.eof() is PromptAction.NONE
    assert d.state is PrivilegedState.COMPLETE
    assert d.output == b"hello\n"


def test_banner_and_split_prompt_are_not_output():
    d = listening()
    assert d.feed(b"We trust you have received the usual lecture.\n") is PromptAction.NONE
    assert d.feed(b"[sudo] pass") is PromptAction.NONE
    assert d.feed(b"word for alice: ") is PromptAction.SEND_CREDENTIAL
    d.credential_written()
    d.feed(b"\n")
    d.feed(b"result\n")
    d.eof()
    assert d.output == b"result\n"


def test_rejection_text_after_credential():
    d = listening()
    d.feed(b"Password:")
    d.credential_written()
    assert d.feed(b"\nSorry, try again.\n") is PromptAction.REJECTED
    assert d.state is PrivilegedState.REJECTED


def test_second_prompt_means_rejected():
    d = listening()
    d.feed(b"Password: ")
    d.credential_written()
    assert d.feed(b"\nPassword: ") is PromptAction.REJECTED


def test_target_prompt_after_handoff_is_output():
    d = listening()
    d.feed(b"Password: ")
    d.credential_written()
    assert d.feed(b"\nChanging password for bob.\n") is PromptAction.NONE
    assert d.feed(b"New password: ") is PromptAction.NONE
    assert d.feed(b"\nAuthentication failure\n") is PromptAction.NONE
    d.eof()
    assert d.output == b"Changing password for bob.\nNew password: \nAuthentication failure\n"


def test_only_the_answered_prompt_counts_as_repeat():
    d = listening(PromptConfig(prompt_patterns=[r"\[helper\] password:\s*$", r"New password:\s*$"]))
    assert d.feed(b"[helper] password: ") is PromptAction.SEND_CREDENTIAL
    d.credential_written()
    assert d.feed(b"\nNew password: ") is PromptAction.NONE
    assert d.feed(b"\n[helper] password: ") is PromptAction.NONE
    assert d.state is PrivilegedState.AWAITING_COMPLETION


def test_blank_lines_before_rejection():
    d = listening()
    d.feed(b"Password: ")
    d.credential_written()
    assert d.feed(b"\n\n") is PromptAction.NONE
    assert d.feed(b"Sorry, try again.\n") is PromptAction.REJECTED


def test_rejection_scan_is_bounded():
    d = listening(PromptConfig(rejection_scan_limit=16))
    d.feed(b"Password: ")
    d.credential_written()
    assert d.feed(b"x" * 32) is PromptAction.NONE
    assert d.feed(b"Sorry, try again") is PromptAction.NONE
    d.eof()
    assert d.output.endswith(b"Sorry, try again")


def test_window_expiry_treats_everything_as_output():
    d = listening()
    d.feed(b"no prompt here\n")
    assert d.window_expired() is PromptAction.NONE
    assert d.state is PrivilegedState.AWAITING_COMPLETION
    assert d.feed(b"Password: is just text now") is PromptAction.NONE
    d.eof()
    assert d.output == b"no prompt here\nPassword: is just text now"


def test_window_expiry_with_required_prompt():
    d = listening(PromptConfig(require_prompt=True))
    d.feed(b"output")
    assert d.window_expired() is PromptAction.PROMPT_TIMEOUT


def test_eof_before_prompt():
    d = listening()
    d.feed(b"done\n")
    assert d.eof() is PromptAction.NONE
    assert d.state is PrivilegedState.COMPLETE
    assert d.output == b"done\n"
    strict = listening(PromptConfig(require_prompt=True))
    assert strict.eof() is PromptAction.PROMPT_TIMEOUT


def test_events_out_of_order():
    d = PromptDetector()
    with pytest.raises(RuntimeError):
        d.feed(b"Password: ")
    with pytest.raises(RuntimeError):
        d.listen()


def test_prompt_config_validation():
    with pytest.raises(ValidationError):
        PromptConfig(prompt_patterns=["("])
    with pytest.raises(ValidationError):
        PromptConfig(prompt_patterns=[])
    with pytest.raises(ValidationError):
        PromptConfig(prompt_timeout=0)
    with pytest.raises(ValidationError):
        PromptConfig(timeout=-1)


def test_custom_prompt_pattern():
    d = listening(PromptConfig(prompt_patterns=[r"Passphrase for key '[^']*':\s*$"]))
    assert d.feed(b"Password: ") is PromptAction.NONE
    assert d.feed(b"\nPassphrase for key 'id': ") is PromptAction.SEND_CREDENTIAL


# ----- against stub elevation helpers on a real pty -----

TARGET = make_spec([PY, "-c", "print('hello from target')"])


@needs_pty
def test_accepting_stub(accept_stub, tmp_path):
    result = run_privileged(TARGET, "s3cret", PromptConfig(timeout=60), PrefixWrapper([str(accept_stub)]))
    assert result.returncode == 0
    assert result.stdout == b"hello from target\n"
    assert result.stderr is None
    assert b"s3cret" not in result.stdout
    assert (tmp_path / "received").read_text() == "s3cret\n"


@needs_pty
def test_accepting_stub_async(accept_stub, tmp_path):
    wrapper = PrefixWrapper([str(accept_stub)])
    result = asyncio.run(run_privileged_async(TARGET, "s3cret", PromptConfig(timeout=60), wrapper))
    assert result.returncode == 0
    assert result.stdout == b"hello from target\n"
    assert (tmp_path / "received").read_text() == "s3cret\n"


@needs_pty
def test_target_exit_code_propagates(accept_stub):
    spec = make_spec([PY, "-c", "import sys; print('partial'); sys.exit(7)"])
    result = run_privileged(spec, "pw", PromptConfig(timeout=60), PrefixWrapper([str(accept_stub)]))
    assert result.returncode == 7
    assert result.stdout == b"partial\n"


@needs_pty
def test_rejecting_stub(reject_stub):
    started = time.monotonic()
    with pytest.raises(CredentialRejected):
        run_privileged(TARGET, "wrong", PromptConfig(timeout=60), PrefixWrapper([str(reject_stub)]))
    assert time.monotonic() - started < 30


@needs_pty
def test_rejecting_stub_async(reject_stub):
    with pytest.raises(CredentialRejected):
        asyncio.run(run_privileged_async(TARGET, "wrong", PromptConfig(timeout=60), PrefixWrapper([str(reject_stub)])))


@needs_pty
def test_wrapper_that_never_prompts():
    spec = make_spec([PY, "-c", "print('no password needed')"])
    result = run_privileged(spec, "unused", PromptConfig(prompt_timeout=2.0, timeout=60), PrefixWrapper(["env"]))
    assert result.returncode == 0
    assert result.stdout == b"no password needed\n"


@needs_pty
def test_required_prompt_times_out():
    spec = make_spec([PY, "-c", "import time; time.sleep(10)"])
    config = PromptConfig(prompt_timeout=0.3, require_prompt=True)
    started = time.monotonic()
    with pytest.raises(PromptTimeout):
        run_privileged(spec, "unused", config, PrefixWrapper(["env"]))
    assert time.monotonic() - started < 5
    with pytest.raises(PromptTimeout):
        asyncio.run(run_privileged_async(spec, "unused", config, PrefixWrapper(["env"])))


@needs_pty
def test_overall_timeout_kills(accept_stub):
    spec = make_spec([PY, "-c", "import time; time.sleep(10)"])
    result = run_privileged(spec, "pw", PromptConfig(timeout=1.0), PrefixWrapper([str(accept_stub)]))
    assert result.timed_out
    assert result.signal == signal.SIGKILL
    assert not result.success


@needs_pty
def test_overall_timeout_kills_async(accept_stub):
    spec = make_spec([PY, "-c", "import time; time.sleep(10)"])
    wrapper = PrefixWrapper([str(accept_stub)])
    started = time.monotonic()
    result = asyncio.run(run_privileged_async(spec, "pw", PromptConfig(timeout=1.0), wrapper))
    assert time.monotonic() - started < 8
    assert result.timed_out
    assert result.signal == signal.SIGKILL


PASSWD_LIKE = (
    "import sys, time\n"
    "print('Changing password for bob.', flush=True)\n"
    "sys.stdout.write('New password: '); sys.stdout.flush()\n"
    "time.sleep(0.3)\n"
    "print('done')\n"
)


@needs_pty
def test_target_asking_for_a_password_is_not_rejection(accept_stub):
    spec = make_spec([PY, "-c", PASSWD_LIKE])
    wrapper = PrefixWrapper([str(accept_stub)])
    result = run_privileged(spec, "s3cret", PromptConfig(timeout=60), wrapper)
    assert result.returncode == 0
    assert b"New password: " in result.stdout
    assert b"done" in result.stdout
    result = asyncio.run(run_privileged_async(spec, "s3cret", PromptConfig(timeout=60), wrapper))
    assert b"done" in result.stdout


@needs_pty
def test_failed_spawn_never_reports_pty(tmp_path, caplog):
    missing = PrefixWrapper([str(tmp_path / "no-such-helper")])
    with caplog.at_level(logging.DEBUG, logger="subcommander.core.privileged"):
        with pytest.raises(SpawnFailed):
            run_privileged(TARGET, "pw", PromptConfig(timeout=10), missing)
        with pytest.raises(SpawnFailed):
            asyncio.run(run_privileged_async(TARGET, "pw", PromptConfig(timeout=10), missing))
    assert "pty_allocated" not in caplog.text
