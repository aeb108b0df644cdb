"""
Workspaces

A workspace pairs a no-checkout git clone with a FUSE-mounted view of a
master repository's tree, so many workspaces share one object store and
none of them copies file content.

Layout:

    wsA/
    ├── .git/                      ← shared (or shallow) clone metadata
    │   ├── fuse_pid               ← overlay process handle, serialized
    │   ├── overlay.log            ← overlay binary stdout/stderr
    │   ├── overlayws.json         ← workspace metadata
    │   └── overlayws_creating     ← present only while creation is incomplete
    └── src/                       ← overlay mount point, core.worktree

Creation never checks files out through git: the overlay already exposes
them, so the index is seeded with read-tree from the master's HEAD. That
keeps creation O(1) in file count.

Partial creation: if any step after the overlay starts fails, the overlay
is stopped (and unmounted) before the error propagates, but the
workspace directory, pid marker and creation marker stay for diagnosis.
`cleanup` removes such a workspace like any other. An overlay that cannot
be started at all leaves no pid marker for cleanup to act on, so the
fresh clone is removed on the spot instead.

A shared clone references the master's objects rather than copying them.
Destroying or garbage-collecting the master while workspaces exist is the
caller's responsibility and leaves those workspaces broken.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from . import git, mounts
from .config import Settings, load_settings
from .errors import (
    CloneFailed,
    HeadResolutionFailed,
    InvalidArguments,
    InvalidWorkspace,
    MountStillActive,
    NoRecordedProcess,
    NotAGitRepository,
    OverlayExited,
    OverlayLaunchFailed,
    UnmountFailed,
    WorkspaceAlreadyExists,
    WorkspaceError,
)
from .git import GitCommandError
from .locking import _atomic_write, workspace_lock
from .process import (
    LOG_FILE_NAME,
    PID_FILE_NAME,
    OverlayProcess,
    terminate_on_failure,
)

logger = logging.getLogger(__name__)

MOUNT_DIR_NAME = "src"
INFO_FILE_NAME = "overlayws.json"
CREATING_MARKER_NAME = "overlayws_creating"


@dataclass
class WorkspaceInfo:
    """Metadata about a workspace, persisted in .git/overlayws.json."""
    name: str
    path: Path
    master: Path
    origin: str
    clone_strategy: str
    mount_path: Path
    head_commit: str
    pid: int
    created_at: float

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "path": str(self.path),
            "master": str(self.master),
            "origin": self.origin,
            "clone_strategy": self.clone_strategy,
            "mount_path": str(self.mount_path),
            "head_commit": self.head_commit,
            "pid": self.pid,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkspaceInfo":
        data = dict(data)
        for key in ("path", "master", "mount_path"):
            data[key] = Path(data[key])
        return cls(**data)


@dataclass
class Workspace:
    """What create() hands back, and what cleanup() accepts."""
    path: Path
    info: WorkspaceInfo
    overlay: OverlayProcess

    @property
    def mount_path(self) -> Path:
        return self.path / MOUNT_DIR_NAME

    @property
    def meta_dir(self) -> Path:
        return git.git_dir(self.path)


@dataclass
class CleanupReport:
    workspace: Path
    pid: int
    process_was_alive: bool = False
    process_forced: bool = False
    process_stopped: bool = True
    was_mounted: bool = False
    unmount_attempts: int = 0
    removed: bool = False
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "workspace": str(self.workspace),
            "pid": self.pid,
            "process_was_alive": self.process_was_alive,
            "process_forced": self.process_forced,
            "process_stopped": self.process_stopped,
            "was_mounted": self.was_mounted,
            "unmount_attempts": self.unmount_attempts,
            "removed": self.removed,
            "warnings": list(self.warnings),
        }


@dataclass
class WorkspaceStatus:
    path: Path
    exists: bool
    valid: bool
    pid: int | None = None
    alive: bool = False
    mounted: bool = False
    creating: dict | None = None
    info: dict | None = None
    problems: list = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.valid and not self.problems

    def to_dict(self) -> dict:
        return {
            "path": str(self.path),
            "exists": self.exists,
            "valid": self.valid,
            "pid": self.pid,
            "alive": self.alive,
            "mounted": self.mounted,
            "creating": self.creating,
            "info": self.info,
            "consistent": self.consistent,
            "problems": list(self.problems),
        }


def _validate_workspace_name(name: str):
    """Workspace names are single path components."""
    if not name or name in (".", "..") or "/" in name or "\0" in name:
        raise InvalidArguments(f"Invalid workspace name: {name!r}")


def _resolve_binary(binary: str) -> str:
    """Locate the overlay binary, either a path or a name on PATH."""
    if "/" in binary:
        path = Path(binary).expanduser()
        if not path.is_file():
            raise OverlayLaunchFailed(f"Overlay binary not found: {path}")
        if not os.access(path, os.X_OK):
            raise OverlayLaunchFailed(f"Overlay binary is not executable: {path}")
        return str(path.resolve())
    found = shutil.which(binary)
    if found is None:
        raise OverlayLaunchFailed(
            f"Overlay binary '{binary}' not found on PATH.\n"
            f"  Set overlay_binary in the config or OVERLAYWS_OVERLAY_BINARY."
        )
    return found


class WorkspaceManager:
    """
    Creates, inspects and tears down overlay workspaces.

    Workspace names are resolved against base_dir (the current directory
    by default), the same way the shell tooling treated its arguments.
    """

    def __init__(self, settings: Settings | None = None, base_dir: Path | None = None):
        self.settings = settings if settings is not None else load_settings()
        self.base_dir = Path(base_dir) if base_dir is not None else None

    def _base(self) -> Path:
        return (self.base_dir if self.base_dir is not None else Path.cwd()).resolve()

    def _workspace_path(self, workspace) -> Path:
        if isinstance(workspace, Workspace):
            return workspace.path
        path = Path(workspace)
        if not path.is_absolute():
            path = self._base() / path
        return path

    # ── Mount helpers ─────────────────────────────────────────────

    def _is_mounted(self, mount_path: Path) -> bool:
        return mounts.is_mounted(mount_path, self.settings.mountpoint_command)

    def _unmount(self, mount_path: Path, report: CleanupReport | None = None) -> bool:
        """One unmount attempt. Failure is logged, never raised."""
        if report is not None:
            report.unmount_attempts += 1
        try:
            mounts.unmount(mount_path, self.settings.unmount_command)
        except UnmountFailed as e:
            logger.warning("%s", e)
            if report is not None:
                report.warnings.append(str(e))
            return False
        return True

    def _unmount_if_mounted(self, mount_path: Path):
        if self._is_mounted(mount_path):
            self._unmount(mount_path)

    # ── Creation ──────────────────────────────────────────────────

    def create(self, master_repo_path, workspace_name: str,
               origin: str | None = None) -> Workspace:
        """
        Create a workspace named workspace_name overlaying master_repo_path.

        Args:
            master_repo_path: Local git repository whose tree the overlay serves.
            workspace_name:   Directory to create under base_dir.
            origin:           Clone source. Defaults to the resolved master
                              path (shared clone); a remote URL gives a
                              depth-limited clone instead.
        """
        _validate_workspace_name(workspace_name)

        master_arg = Path(master_repo_path)
        if not git.is_git_repository(master_arg):
            raise NotAGitRepository(master_repo_path)

        ws_path = self._base() / workspace_name
        if ws_path.exists() or ws_path.is_symlink():
            raise WorkspaceAlreadyExists(workspace_name)

        binary = _resolve_binary(self.settings.overlay_binary)
        master = master_arg.resolve()
        if origin is None:
            origin = str(master)

        with workspace_lock(ws_path, "create"):
            # Another invocation may have finished between check and lock.
            if ws_path.exists():
                raise WorkspaceAlreadyExists(workspace_name)
            return self._create_locked(master, ws_path, origin, binary)

    def _create_locked(self, master: Path, ws_path: Path, origin: str,
                       binary: str) -> Workspace:
        s = self.settings
        name = ws_path.name

        logger.info("Cloning master repo into workspace '%s'...", name)
        try:
            strategy = git.clone_no_checkout(
                origin, ws_path, depth=s.clone_depth, timeout=s.clone_timeout
            )
        except GitCommandError as e:
            raise CloneFailed(f"Could not clone {origin} into {ws_path}: {e}") from e

        meta = git.git_dir(ws_path)
        marker = meta / CREATING_MARKER_NAME
        self._mark(marker, "cloned")

        mount_path = ws_path / MOUNT_DIR_NAME
        mount_path.mkdir()

        try:
            overlay = OverlayProcess.launch(
                binary, master, mount_path,
                pid_file=meta / PID_FILE_NAME,
                log_path=meta / LOG_FILE_NAME,
            )
        except OverlayLaunchFailed:
            # Nothing is running or mounted yet, so the clone can simply go.
            logger.warning("Removing %s after failed overlay launch", ws_path)
            shutil.rmtree(ws_path, ignore_errors=True)
            raise
        with terminate_on_failure(
            overlay, grace=s.termination_grace,
            on_abort=lambda: self._unmount_if_mounted(mount_path),
        ):
            self._mark(marker, "launched", pid=overlay.pid)
            self._wait_for_mount(overlay)
            self._mark(marker, "mounted", pid=overlay.pid)

            head = self._seed_index(master, ws_path, mount_path)
            self._mark(marker, "index", pid=overlay.pid)

            try:
                for key, value in git.WORKSPACE_CONFIG:
                    git.config_set(ws_path, key, value, timeout=s.git_timeout)
            except GitCommandError as e:
                raise WorkspaceError(f"Failed to configure workspace {ws_path}: {e}") from e

            info = WorkspaceInfo(
                name=name,
                path=ws_path,
                master=master,
                origin=origin,
                clone_strategy=strategy.value,
                mount_path=mount_path,
                head_commit=head,
                pid=overlay.pid,
                created_at=time.time(),
            )
            _atomic_write(meta / INFO_FILE_NAME, json.dumps(info.to_dict(), indent=2))
            marker.unlink(missing_ok=True)

        logger.info("Workspace '%s' is ready (FUSE PID %d)", name, overlay.pid)
        return Workspace(path=ws_path, info=info, overlay=overlay)

    def _mark(self, marker: Path, step: str, **extra):
        """Record how far creation got; removed only on success."""
        data = {"started_at": time.time(), "step": step}
        if marker.exists():
            try:
                data["started_at"] = json.loads(marker.read_text())["started_at"]
            except (json.JSONDecodeError, KeyError, OSError):
                pass
        data.update(extra)
        _atomic_write(marker, json.dumps(data, indent=2))

    def _wait_for_mount(self, overlay: OverlayProcess):
        s = self.settings

        def still_running(waited):
            code = overlay.returncode()
            if code is not None:
                raise OverlayExited(overlay.mount_path, waited, code)

        logger.info("Waiting for filesystem to mount...")
        waited = mounts.wait_for_mount(
            overlay.mount_path,
            self._is_mounted,
            attempts=s.mount_attempts,
            interval=s.mount_interval,
            backoff=s.mount_backoff,
            still_running=still_running,
        )
        logger.info("Filesystem mounted successfully (%.1fs)", waited)

    def _seed_index(self, master: Path, ws_path: Path, mount_path: Path) -> str:
        """Point the worktree at the mount and load the master's HEAD into the index."""
        timeout = self.settings.git_timeout
        try:
            git.config_set(ws_path, "core.worktree", str(mount_path), timeout=timeout)
        except GitCommandError as e:
            raise WorkspaceError(f"Failed to set core.worktree in {ws_path}: {e}") from e

        try:
            head = git.rev_parse_head(master, timeout=timeout)
        except GitCommandError as e:
            raise HeadResolutionFailed(
                f"Cannot resolve HEAD of {master}: {e}\n"
                f"  The workspace at {ws_path} was left in place for diagnosis; "
                f"run 'overlayws cleanup {ws_path}' to remove it."
            ) from e

        try:
            git.read_tree(ws_path, head, timeout=timeout)
        except GitCommandError as e:
            raise HeadResolutionFailed(
                f"Cannot load commit {head} into the index of {ws_path}: {e}"
            ) from e
        return head

    # ── Cleanup ───────────────────────────────────────────────────

    def cleanup(self, workspace) -> CleanupReport:
        """
        Stop the overlay, unmount, and remove the workspace directory.

        Only a missing process marker aborts outright: without it there is
        no safe way to know which process to stop. A dead process or an
        absent mount is logged and cleanup continues.
        """
        ws_path = self._workspace_path(workspace)
        meta = git.git_dir(ws_path)
        if ws_path.exists() and not meta.is_dir():
            raise InvalidWorkspace(ws_path)

        mount_path = ws_path / MOUNT_DIR_NAME
        pid_file = meta / PID_FILE_NAME
        if not pid_file.exists():
            raise NoRecordedProcess(pid_file)

        with workspace_lock(ws_path, "cleanup"):
            overlay = OverlayProcess.load(mount_path, pid_file)
            if isinstance(workspace, Workspace) and workspace.overlay.pid == overlay.pid:
                overlay = workspace.overlay
            return self._cleanup_locked(ws_path, overlay)

    def _cleanup_locked(self, ws_path: Path, overlay: OverlayProcess) -> CleanupReport:
        s = self.settings
        report = CleanupReport(workspace=ws_path, pid=overlay.pid)

        result = overlay.terminate(grace=s.termination_grace)
        report.process_was_alive = result.was_alive
        report.process_forced = result.forced
        report.process_stopped = result.stopped
        if not result.was_alive:
            report.warnings.append(f"No running FUSE process found with PID {overlay.pid}.")
        elif not result.stopped:
            report.warnings.append(f"FUSE process {overlay.pid} is still alive after SIGKILL.")

        mount_path = overlay.mount_path
        if self._is_mounted(mount_path):
            report.was_mounted = True
            logger.info("Unmounting FUSE filesystem at %s...", mount_path)
            if self._unmount(mount_path, report):
                logger.info("FUSE filesystem unmounted successfully.")
        else:
            logger.info("No FUSE filesystem mounted at %s.", mount_path)

        if self._is_mounted(mount_path):
            # Process death and kernel-side teardown can race; one more try.
            time.sleep(s.unmount_retry_delay)
            if self._is_mounted(mount_path):
                self._unmount(mount_path, report)
            if self._is_mounted(mount_path):
                raise MountStillActive(mount_path)

        overlay.forget()
        self._remove_tree(ws_path, mount_path, report)
        report.removed = True
        logger.info("Cleanup complete.")
        return report

    def _remove_tree(self, ws_path: Path, mount_path: Path, report: CleanupReport):
        try:
            shutil.rmtree(ws_path)
        except OSError as e:
            # A dead FUSE mount answers ENOTCONN and may not show up in the
            # mount probe. Detach it and try again.
            if e.errno != errno.ENOTCONN:
                raise
            logger.warning("Stale FUSE mount at %s, detaching", mount_path)
            self._unmount(mount_path, report)
            shutil.rmtree(ws_path)

    # ── Query ─────────────────────────────────────────────────────

    def status(self, workspace) -> WorkspaceStatus:
        """Inspect a workspace without changing anything."""
        ws_path = self._workspace_path(workspace)
        meta = git.git_dir(ws_path)
        st = WorkspaceStatus(path=ws_path, exists=ws_path.exists(), valid=meta.is_dir())
        if not st.exists:
            st.problems.append("workspace directory does not exist")
            return st
        if not st.valid:
            st.problems.append("no .git metadata directory")
            return st

        info_path = meta / INFO_FILE_NAME
        if info_path.exists():
            try:
                st.info = json.loads(info_path.read_text())
            except (json.JSONDecodeError, OSError):
                st.problems.append("unreadable workspace metadata")

        marker = meta / CREATING_MARKER_NAME
        if marker.exists():
            try:
                st.creating = json.loads(marker.read_text())
            except (json.JSONDecodeError, OSError):
                st.creating = {"error": "unreadable creation marker"}
            st.problems.append(
                f"creation did not complete (last step: {st.creating.get('step', 'unknown')})"
            )

        mount_path = ws_path / MOUNT_DIR_NAME
        st.mounted = self._is_mounted(mount_path)
        try:
            overlay = OverlayProcess.load(mount_path, meta / PID_FILE_NAME)
        except NoRecordedProcess:
            st.problems.append("no recorded FUSE process")
        else:
            st.pid = overlay.pid
            st.alive = overlay.is_alive() and overlay.is_ours()

        if st.pid is not None:
            if st.alive and not st.mounted:
                st.problems.append("overlay process alive but mount point not mounted")
            elif not st.alive and st.mounted:
                st.problems.append("overlay process dead but mount point still mounted")
            elif not st.alive:
                st.problems.append("overlay process is not running")
        return st


# ── Module-level convenience ──────────────────────────────────────


def create(master_repo_path, workspace_name: str, origin: str | None = None,
           settings: Settings | None = None, base_dir: Path | None = None) -> Workspace:
    return WorkspaceManager(settings, base_dir).create(master_repo_path, workspace_name,
                                                        origin=origin)


def cleanup(workspace, settings: Settings | None = None,
            base_dir: Path | None = None) -> CleanupReport:
    return WorkspaceManager(settings, base_dir).cleanup(workspace)


def status(workspace, settings: Settings | None = None,
           base_dir: Path | None = None) -> WorkspaceStatus:
    return WorkspaceManager(settings, base_dir).status(workspace)
