"""
Workspace Locks

Create and cleanup on the same workspace name must never interleave.
Cross-process advisory locking via atomic mkdir: mkdir either succeeds
or raises if the directory already exists. No fcntl, no deps.

The lock lives beside the workspace (the workspace itself is created by
git clone and removed by cleanup, so it cannot hold its own lock):

    parent/
    ├── wsA/                            ← workspace
    └── .wsA.overlayws.lock/            ← existence = locked
        └── owner.json                  ← who holds it
"""

from __future__ import annotations

import json
import os
import shutil
import socket
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path

from .errors import WorkspaceBusy

# Max age before a lock is considered stale regardless of PID
LOCK_MAX_AGE_SECONDS = 3600 * 4  # 4 hours


def _hostname() -> str:
    """Get hostname, cached after first call."""
    if not hasattr(_hostname, "_cached"):
        _hostname._cached = socket.gethostname()
    return _hostname._cached


def _atomic_write(path: Path, content: str):
    """
    Write content to a file atomically via write-to-temp + rename.

    Prevents partial/corrupt JSON if the process dies mid-write.
    """
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        Path(tmp_path).replace(path)
    except Exception:
        # Clean up temp file on any failure
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def lock_path(workspace: Path) -> Path:
    workspace = Path(workspace)
    return workspace.parent / f".{workspace.name}.overlayws.lock"


def read_lock_owner(lock_dir: Path) -> dict | None:
    """Read the owner.json from a lock directory."""
    owner_path = lock_dir / "owner.json"
    if not owner_path.exists():
        return None
    try:
        return json.loads(owner_path.read_text())
    except (json.JSONDecodeError, OSError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False


def is_lock_stale(owner: dict | None) -> bool:
    """
    Determine if a lock is stale (safe to reclaim).

    A lock is stale if any of:
    - We can't read the owner data at all
    - The lock is older than LOCK_MAX_AGE_SECONDS
    - The owning PID no longer exists (on the same host)
    """
    if not owner:
        return True

    acquired_at = owner.get("acquired_at", 0)
    if (time.time() - acquired_at) > LOCK_MAX_AGE_SECONDS:
        return True

    # PID check, only meaningful on the same hostname
    if owner.get("hostname") == _hostname():
        pid = owner.get("pid")
        if pid is not None and not _pid_alive(pid):
            return True

    return False


def acquire(workspace: Path, operation: str) -> Path:
    """
    Acquire the lock for a workspace name. Returns the lock directory.

    Raises WorkspaceBusy if a live holder has it. A stale lock is reclaimed.
    """
    workspace = Path(workspace)
    lock_dir = lock_path(workspace)

    try:
        lock_dir.mkdir(exist_ok=False)
    except FileExistsError:
        owner = read_lock_owner(lock_dir)
        if owner is None:
            # The holder may be between mkdir and writing owner.json
            time.sleep(0.05)
            owner = read_lock_owner(lock_dir)
        if not is_lock_stale(owner):
            raise WorkspaceBusy(workspace.name, owner)
        # Stale lock: previous holder died or timed out. Reclaim.
        shutil.rmtree(lock_dir, ignore_errors=True)
        try:
            lock_dir.mkdir(exist_ok=False)
        except FileExistsError:
            # Race condition: someone else grabbed it first
            raise WorkspaceBusy(workspace.name, read_lock_owner(lock_dir))

    _atomic_write(lock_dir / "owner.json", json.dumps({
        "operation": operation,
        "workspace": str(workspace),
        "acquired_at": time.time(),
        "pid": os.getpid(),
        "hostname": _hostname(),
    }, indent=2))
    return lock_dir


def release(lock_dir: Path):
    """Remove a lock directory and its contents."""
    if lock_dir.exists():
        shutil.rmtree(lock_dir)


@contextmanager
def workspace_lock(workspace: Path, operation: str):
    """Hold the workspace lock for the duration of the block."""
    lock_dir = acquire(workspace, operation)
    try:
        yield lock_dir
    finally:
        release(lock_dir)
