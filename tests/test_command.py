from pathlib import Path

import pytest

from subcommander.core.command import Command, make_spec
from subcommander.core.errors import InvalidCommand
from subcommander.core.models import StreamMode


def test_builder_produces_spec(tmp_path):
    spec = (
        Command("tar")
        .args("-czf", "out.tgz")
        .arg(Path("src"))
        .env("LC_ALL", "C")
        .envs({"TZ": "UTC"})
        .cwd(tmp_path)
        .capture()
        .build()
    )
    assert spec.argv == ["tar", "-czf", "out.tgz", "src"]
    assert spec.environment == {"LC_ALL": "C", "TZ": "UTC"}
    assert spec.cwd == str(tmp_path)
    assert spec.stdin is StreamMode.INHERIT
    assert spec.stdout is StreamMode.PIPE
    assert spec.stderr is StreamMode.PIPE
    assert not spec.clear_env


def test_arguments_are_verbatim():
    spec = Command("echo").args("$HOME", "a b", "*", ";rm").build()
    assert spec.args == ("$HOME", "a b", "*", ";rm")


def test_modes_accept_strings():
    spec = Command("cat").stdin("pipe").stdout("null").stderr(StreamMode.INHERIT).build()
    assert spec.stdin is StreamMode.PIPE
    assert spec.stdout is StreamMode.NULL


@pytest.mark.parametrize("program", ["", "   "])
def test_empty_program_rejected(program):
    with pytest.raises(InvalidCommand):
        Command(program).build()


def test_non_string_argument_rejected():
    with pytest.raises(InvalidCommand):
        Command("echo").arg(3)


def test_unknown_mode_rejected():
    with pytest.raises(InvalidCommand):
        Command("cat").stdout("socket")


def test_partial_pty_rejected():
    with pytest.raises(InvalidCommand):
        Command("login").stdout("pty").build()


def test_bad_env_name_rejected():
    with pytest.raises(InvalidCommand):
        Command("env").env("A=B", "1").build()


def test_builder_is_reusable():
    cmd = Command("echo").arg("one")
    first = cmd.build()
    second = cmd.arg("two").build()
    assert first.args == ("one",)
    assert second.args == ("one", "two")


def test_make_spec():
    spec = make_spec(["printf", "%s", "x"], stdout="pipe")
    assert spec.program == "printf"
    assert spec.stdout is StreamMode.PIPE
    with pytest.raises(InvalidCommand):
        make_spec([])
    with pytest.raises(InvalidCommand):
        make_spec(["x"], stdio="pipe")
