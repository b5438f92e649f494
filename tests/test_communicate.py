import logging

import pytest

from subcommander.core.communicate import CommunicateSession


def test_input_cursor_and_line_state():
    s = CommunicateSession(b"abc\ndef", chunk_size=4)
    assert s.has_input and not s.input_done
    assert bytes(s.next_chunk()) == b"abc\n"
    s.advance(4)
    assert not s.line_open
    assert bytes(s.next_chunk()) == b"def"
    s.advance(3)
    assert s.input_done
    assert s.line_open


def test_no_input():
    s = CommunicateSession()
    assert not s.has_input
    assert s.input_done


def test_abandon_input_is_logged(caplog):
    s = CommunicateSession(b"x" * 10)
    s.advance(4)
    with caplog.at_level(logging.WARNING, logger="subcommander.core.communicate"):
        s.abandon_input("broken pipe")
    assert s.input_done
    assert "6 bytes unwritten" in caplog.text


def test_cap_is_shared_across_streams():
    seen = []
    s = CommunicateSession(max_output=5, on_output=lambda n, c: seen.append((n, c)))
    s.track("stdout")
    s.track("stderr")
    assert s.feed("stdout", b"abc") is True
    assert s.feed("stderr", b"defg") is False
    assert s.truncated
    assert s.output("stdout") == b"abc"
    assert s.output("stderr") == b"de"
    assert seen == [("stdout", b"abc"), ("stderr", b"de")]
    assert s.feed("stdout", b"more") is False
    assert s.output("stdout") == b"abc"


def test_exact_cap_is_not_truncation():
    s = CommunicateSession(max_output=3)
    s.track("stdout")
    assert s.feed("stdout", b"abc") is True
    assert not s.truncated


def test_untracked_stream_output_is_none():
    assert CommunicateSession().output("stderr") is None


@pytest.mark.parametrize(
    "kwargs, exc",
    [
        ({"input": "text"}, TypeError),
        ({"max_output": 0}, ValueError),
        ({"chunk_size": 0}, ValueError),
    ],
)
def test_invalid_arguments(kwargs, exc):
    with pytest.raises(exc):
        CommunicateSession(**kwargs)
