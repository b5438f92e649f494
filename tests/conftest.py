import logging
import os
import stat
import sys
from pathlib import Path

import pytest

PY = sys.executable

# copy stdin to stdout in small chunks so large payloads cross the pipe many times
ECHO = "import shutil, sys; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer, 4096)"


def _has_pty() -> bool:
    if sys.platform == "win32":
        return False
    try:
        import pty
        master, slave = pty.openpty()
    except (ImportError, OSError):
        return False
    os.close(master)
    os.close(slave)
    return True


needs_pty = pytest.mark.skipif(not _has_pty(), reason="pseudo-terminals unavailable")
needs_proc_fd = pytest.mark.skipif(not Path("/proc/self/fd").is_dir(), reason="needs /proc/self/fd")


def open_fd_count() -> int:
    return len(os.listdir("/proc/self/fd"))


def write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{PY}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


ACCEPT_STUB = """\
import os, sys
sys.stdout.write("Password: ")
sys.stdout.flush()
line = sys.stdin.readline()
with open(os.environ["STUB_RECEIVED"], "w") as f:
    f.write(line)
sys.stdout.write("\\n")
sys.stdout.flush()
os.execvp(sys.argv[1], sys.argv[1:])
"""

REJECT_STUB = """\
import sys
for _ in range(3):
    sys.stdout.write("Password: ")
    sys.stdout.flush()
    if not sys.stdin.readline():
        break
    sys.stdout.write("\\nSorry, try again.\\n")
    sys.stdout.flush()
sys.exit(1)
"""


@pytest.fixture
def accept_stub(tmp_path, monkeypatch):
    """Elevation helper that prompts once, records the answer, then runs its argv."""
    monkeypatch.setenv("STUB_RECEIVED", str(tmp_path / "received"))
    return write_script(tmp_path / "accept-stub", ACCEPT_STUB)


@pytest.fixture
def reject_stub(tmp_path):
    return write_script(tmp_path / "reject-stub", REJECT_STUB)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("SUBCOMMANDER_LOG_FILE", str(tmp_path / "logs" / "subcommander.log"))
    monkeypatch.delenv("SUBCOMMANDER_CONFIG", raising=False)
    monkeypatch.delenv("SUBCOMMANDER_PASSWORD", raising=False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
            h.close()
    for h in handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(level)
