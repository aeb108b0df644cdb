"""
Shared pytest configuration and fixtures.

Real FUSE mounts are not available on CI runners, so the overlay binary
and the mountpoint/fusermount commands are replaced by small executable
Python scripts:

- fake overlay:    writes <mount>/.fake_mounted and sleeps until signaled.
                   FAKE_OVERLAY_MODE changes its behaviour:
                     mount     (default) mount, remove marker on SIGTERM
                     never     never mount
                     exit      exit with code 3 straight away
                     stubborn  mount, ignore SIGTERM
- fake mountpoint: exit 0 iff <path>/.fake_mounted exists
- fake unmount:    remove <path>/.fake_mounted; FAKE_UNMOUNT_FAIL=1 makes
                   it fail. Every call is appended to FAKE_UNMOUNT_LOG if set.
"""

import os
import signal
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from overlayws import config
from overlayws.config import Settings

FAKE_OVERLAY = """\
#!{python}
import os
import signal
import sys
import time
from pathlib import Path

master, mount = sys.argv[1], Path(sys.argv[2])
mode = os.environ.get("FAKE_OVERLAY_MODE", "mount")
marker = mount / ".fake_mounted"


def _stop(signum, frame):
    marker.unlink(missing_ok=True)
    sys.exit(0)


if mode == "exit":
    sys.exit(3)
if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGTERM, _stop)
if mode != "never":
    marker.write_text(master)
while True:
    time.sleep(0.05)
"""

FAKE_MOUNTPOINT = """\
#!{python}
import sys
from pathlib import Path

sys.exit(0 if (Path(sys.argv[-1]) / ".fake_mounted").exists() else 1)
"""

FAKE_UNMOUNT = """\
#!{python}
import os
import sys
from pathlib import Path

path = Path(sys.argv[-1])
log = os.environ.get("FAKE_UNMOUNT_LOG")
if log:
    with open(log, "a") as f:
        f.write(str(path) + "\\n")
if os.environ.get("FAKE_UNMOUNT_FAIL") == "1":
    print("fusermount: failed to unmount " + str(path) + ": Device or resource busy",
          file=sys.stderr)
    sys.exit(1)
(path / ".fake_mounted").unlink(missing_ok=True)
"""


def _write_script(path: Path, template: str) -> Path:
    path.write_text(template.replace("{python}", sys.executable))
    path.chmod(0o755)
    return path


def _has_git():
    """Check if git is available on the system."""
    try:
        subprocess.run(["git", "--version"], capture_output=True, check=True)
        return True
    except (FileNotFoundError, subprocess.CalledProcessError):
        return False


HAS_GIT = _has_git()


def git(*args, cwd=None) -> str:
    """Run git with a fixed identity and return stripped stdout."""
    result = subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com",
         "-c", "init.defaultBranch=master", *args],
        cwd=str(cwd) if cwd else None,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the developer's own config and OVERLAYWS_* variables out of tests."""
    for key in list(os.environ):
        if key.startswith("OVERLAYWS_") or key.startswith("FAKE_"):
            monkeypatch.delenv(key)
    monkeypatch.setattr(config, "DEFAULT_CONFIG_PATH", tmp_path / "no-such-config.json")


@pytest.fixture
def master_repo(tmp_path):
    """A master repository with two commits."""
    repo = tmp_path / "project"
    repo.mkdir()
    git("init", cwd=repo)
    (repo / "main.py").write_text("print('hello')\n")
    (repo / "lib").mkdir()
    (repo / "lib" / "utils.py").write_text("def add(a, b): return a + b\n")
    git("add", "-A", cwd=repo)
    git("commit", "-m", "Initial commit", cwd=repo)
    (repo / "README.md").write_text("# Project\n")
    git("add", "README.md", cwd=repo)
    git("commit", "-m", "Add README", cwd=repo)
    return repo


@pytest.fixture
def fake_tools(tmp_path):
    """Fake overlay / mountpoint / fusermount executables."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return SimpleNamespace(
        overlay=_write_script(bin_dir / "git_fuse_overlay", FAKE_OVERLAY),
        mountpoint=_write_script(bin_dir / "fake_mountpoint", FAKE_MOUNTPOINT),
        unmount=_write_script(bin_dir / "fake_unmount", FAKE_UNMOUNT),
        unmount_log=tmp_path / "unmount.log",
    )


@pytest.fixture
def settings(fake_tools):
    """Settings wired to the fake tools, with short timings."""
    return Settings(
        overlay_binary=str(fake_tools.overlay),
        mountpoint_command=[str(fake_tools.mountpoint)],
        unmount_command=[str(fake_tools.unmount)],
        mount_attempts=50,
        mount_interval=0.1,
        termination_grace=1.0,
        unmount_retry_delay=0.05,
    )


@pytest.fixture
def base_dir(tmp_path):
    """Directory workspaces are created in; stray overlays are killed afterwards."""
    base = tmp_path / "workspaces"
    base.mkdir()
    yield base
    for pid_file in base.glob("*/.git/fuse_pid"):
        try:
            pid = int(pid_file.read_text().strip())
            # Only ever kill our own fake overlay, never a recycled pid.
            cmdline = Path(f"/proc/{pid}/cmdline").read_bytes()
            if str(tmp_path).encode() in cmdline:
                os.kill(pid, signal.SIGKILL)
        except (ValueError, OSError):
            pass


@pytest.fixture
def run_git():
    """The git helper, for tests that need to build or inspect repositories."""
    return git


def pytest_configure(config):
    config.addinivalue_line("markers", "requires_git: needs the git executable")


def pytest_collection_modifyitems(config, items):
    if HAS_GIT:
        return
    skip = pytest.mark.skip(reason="git not available")
    for item in items:
        if "requires_git" in item.keywords:
            item.add_marker(skip)
