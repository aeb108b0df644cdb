"""
Git

All git operations use subprocess calls to the git CLI.
No gitpython dependency required.

The workspace only ever needs a handful of plumbing commands: clone
(no-checkout, shared or depth-limited), rev-parse against the master's
metadata directory, read-tree against a commit id, and config sets.
"""

import logging
import os
import subprocess
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60
GIT_DIR_NAME = ".git"

# Settings applied to every workspace after the index is seeded. The FUSE
# layer has a higher per-call latency than a local disk, so status/diff
# lean on fsmonitor and the untracked cache; the overlay does not preserve
# per-file permissions, so mode bits are not meaningful.
WORKSPACE_CONFIG = (
    ("core.fsmonitor", "true"),
    ("core.untrackedCache", "true"),
    ("commit.verbose", "false"),
    ("core.fileMode", "false"),
)


class GitCommandError(RuntimeError):
    """A git invocation failed or timed out."""

    def __init__(self, args: list, message: str, returncode: int | None = None,
                 stderr: str = ""):
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class CloneStrategy(Enum):
    SHARED = "shared"     # --shared: reference the source's objects
    SHALLOW = "shallow"   # --depth N: bounded copy from a remote


def _git(
    args: list, cwd: Path | None = None, env: dict | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess:
    """Run git command, raise GitCommandError on failure or timeout."""
    full_env = dict(os.environ)
    if env:
        full_env.update(env)
    if timeout is None:
        timeout = GIT_TIMEOUT_SECONDS
    logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
    try:
        result = subprocess.run(
            ["git"] + args,
            cwd=str(cwd) if cwd is not None else None,
            capture_output=True,
            env=full_env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise GitCommandError(
            args,
            f"git {' '.join(args)} timed out after {timeout}s. "
            "This may indicate a hung git hook, network issue, or filesystem problem.",
        )
    except FileNotFoundError:
        raise GitCommandError(args, "git executable not found on PATH")
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        raise GitCommandError(
            args,
            f"git {' '.join(args)} failed: {stderr}",
            returncode=result.returncode,
            stderr=stderr,
        )
    return result


def _stdout(result: subprocess.CompletedProcess) -> str:
    return result.stdout.decode("utf-8", errors="replace").strip()


def git_dir(repo_path: Path) -> Path:
    return Path(repo_path) / GIT_DIR_NAME


def is_git_repository(repo_path: Path) -> bool:
    """True if repo_path has a .git directory that git accepts."""
    meta = git_dir(repo_path)
    if not meta.is_dir():
        return False
    try:
        _git([f"--git-dir={meta}", "rev-parse", "--git-dir"])
    except GitCommandError as e:
        logger.debug("rev-parse --git-dir rejected %s: %s", meta, e)
        return False
    return True


def clone_strategy(origin: str) -> CloneStrategy:
    """
    Pick the clone strategy from the origin's shape.

    Absolute and explicitly relative paths are local and get a shared
    clone; anything else (URLs, scp-style host:path) is treated as remote.
    """
    origin = str(origin)
    if origin.startswith(("/", "./", "../")):
        return CloneStrategy.SHARED
    return CloneStrategy.SHALLOW


def clone_no_checkout(origin: str, target: Path, depth: int = 1,
                      timeout: float | None = None) -> CloneStrategy:
    """Clone origin into target without materializing any working files."""
    strategy = clone_strategy(origin)
    target = Path(target)
    if strategy is CloneStrategy.SHARED:
        args = ["clone", "--no-checkout", "--shared", str(origin), str(target)]
    else:
        args = ["clone", "--no-checkout", f"--depth={depth}", str(origin), str(target)]
    _git(args, cwd=target.parent, timeout=timeout)
    return strategy


def rev_parse_head(repo_path: Path, timeout: float | None = None) -> str:
    """Resolve HEAD of the repository at repo_path to a full commit id."""
    meta = git_dir(repo_path)
    return _stdout(_git([f"--git-dir={meta}", "rev-parse", "--verify", "HEAD^{commit}"],
                        timeout=timeout))


def read_tree(workspace: Path, commit: str, timeout: float | None = None):
    """Load commit's tree into the workspace index without touching files."""
    _git(["read-tree", commit], cwd=workspace, timeout=timeout)


def config_set(workspace: Path, key: str, value: str, timeout: float | None = None):
    _git(["config", key, value], cwd=workspace, timeout=timeout)


def config_get(workspace: Path, key: str) -> str | None:
    """
    Read one config value, or None if unset.

    Creation only ever writes config; this is here for inspecting a
    workspace after the fact.
    """
    try:
        return _stdout(_git(["config", "--get", key], cwd=workspace))
    except GitCommandError as e:
        # exit 1 means the key is unset
        if e.returncode == 1:
            return None
        raise
