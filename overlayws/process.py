"""
Overlay Process

The overlay binary is a long-lived background process bound 1:1 to a
workspace. Creation and cleanup are separate invocations, so the handle
is serialized as the plain decimal pid in <workspace>/.git/fuse_pid; the
binary writes the same file with the same pid when it starts.

    handle = OverlayProcess.launch(binary, master, mount_path, pid_file)
    with terminate_on_failure(handle, ...):
        ...                       # any exception stops the overlay
    ...
    handle = OverlayProcess.load(mount_path, pid_file)   # later invocation
    handle.terminate(grace=1.0)
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .errors import NoRecordedProcess, OverlayLaunchFailed, ProcessTerminationFailed

logger = logging.getLogger(__name__)

PID_FILE_NAME = "fuse_pid"
LOG_FILE_NAME = "overlay.log"

# How often liveness is re-checked while waiting for a signal to land.
_POLL_INTERVAL = 0.1

_PROC_ROOT = Path("/proc")


def is_process_alive(pid: int) -> bool:
    """
    Check if a process is still running.

    Signal 0 checks existence without killing. If the process is our own
    child it is reaped first, otherwise an exited-but-unreaped child (a
    zombie) would still answer signal 0.
    """
    try:
        reaped, _status = os.waitpid(pid, os.WNOHANG)
        if reaped == pid:
            return False
    except ChildProcessError:
        pass  # Not our child; nothing to reap
    except OSError:
        pass
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it
    except OSError:
        return False


def read_cmdline(pid: int) -> list[str] | None:
    """
    Arguments of a running process from /proc, or None where /proc is
    unavailable. An exited process reads as an empty list.
    """
    if not _PROC_ROOT.is_dir():
        return None
    try:
        raw = (_PROC_ROOT / str(pid) / "cmdline").read_bytes()
    except (FileNotFoundError, ProcessLookupError):
        return []
    except OSError:
        return None
    return [os.fsdecode(arg) for arg in raw.split(b"\0") if arg]


def _same_location(a, b) -> bool:
    # Resolve parents only: the mount point itself may be a dead FUSE mount.
    a, b = Path(a), Path(b)
    return a.name == b.name and os.path.realpath(a.parent) == os.path.realpath(b.parent)


def _wait_for_exit(pid: int, timeout: float) -> bool:
    """Poll until pid is gone or timeout elapses. True if it exited."""
    deadline = time.monotonic() + timeout
    while True:
        if not is_process_alive(pid):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(min(_POLL_INTERVAL, max(0.0, deadline - time.monotonic())))


@dataclass
class TerminationResult:
    pid: int
    was_alive: bool
    forced: bool = False
    stopped: bool = True


@dataclass
class OverlayProcess:
    """Handle on one overlay binary instance."""
    pid: int
    mount_path: Path
    pid_file: Path
    popen: subprocess.Popen | None = field(default=None, repr=False, compare=False)

    # ── Launch / serialization ───────────────────────────────────

    @classmethod
    def launch(cls, binary: str, master: Path, mount_path: Path, pid_file: Path,
               log_path: Path | None = None) -> "OverlayProcess":
        """
        Start `<binary> <master> <mount_path>` detached in its own session
        and record its pid.
        """
        cmd = [str(binary), str(master), str(mount_path)]
        logger.info("Starting %s for %s", binary, mount_path)

        log = open(log_path, "ab") if log_path is not None else subprocess.DEVNULL
        try:
            popen = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=log,
                start_new_session=True,
            )
        except OSError as e:
            raise OverlayLaunchFailed(f"Cannot start overlay binary {binary!r}: {e}")
        finally:
            if log is not subprocess.DEVNULL:
                log.close()

        handle = cls(pid=popen.pid, mount_path=Path(mount_path),
                     pid_file=Path(pid_file), popen=popen)
        handle.save()
        logger.info("FUSE PID: %d (saved to %s)", popen.pid, pid_file)
        return handle

    def save(self):
        self.pid_file.write_text(f"{self.pid}\n")

    @classmethod
    def load(cls, mount_path: Path, pid_file: Path) -> "OverlayProcess":
        """Read a recorded handle. Raises NoRecordedProcess if there is none."""
        pid_file = Path(pid_file)
        try:
            raw = pid_file.read_text().strip()
        except FileNotFoundError:
            raise NoRecordedProcess(pid_file)
        except OSError as e:
            raise NoRecordedProcess(pid_file, f"unreadable ({e})")
        try:
            pid = int(raw)
        except ValueError:
            raise NoRecordedProcess(pid_file, f"does not contain a pid ({raw!r})")
        if pid <= 0:
            raise NoRecordedProcess(pid_file, f"contains an invalid pid ({pid})")
        return cls(pid=pid, mount_path=Path(mount_path), pid_file=pid_file)

    def forget(self):
        """Remove the pid marker."""
        self.pid_file.unlink(missing_ok=True)

    # ── Lifecycle ────────────────────────────────────────────────

    def is_alive(self) -> bool:
        if self.popen is not None:
            return self.popen.poll() is None
        return is_process_alive(self.pid)

    def returncode(self) -> int | None:
        """Exit code if we launched it and it has exited, else None."""
        if self.popen is None:
            return None
        return self.popen.poll()

    def is_ours(self) -> bool:
        """
        True if the pid still belongs to an overlay serving mount_path.

        A recorded pid can outlive its overlay and be reused by an unrelated
        process; that process's arguments will not name our mount point.
        Where /proc is unavailable the pid is trusted.
        """
        if self.popen is not None:
            return True
        argv = read_cmdline(self.pid)
        if argv is None:
            return True
        return any(_same_location(arg, self.mount_path) for arg in argv[1:])

    def _signal(self, sig) -> bool:
        try:
            os.kill(self.pid, sig)
            return True
        except ProcessLookupError:
            return False

    def _wait(self, timeout: float) -> bool:
        if self.popen is not None:
            try:
                self.popen.wait(timeout=timeout)
                return True
            except subprocess.TimeoutExpired:
                return False
        return _wait_for_exit(self.pid, timeout)

    def terminate(self, grace: float = 1.0) -> TerminationResult:
        """
        Two-phase shutdown: SIGTERM, wait up to `grace` seconds, SIGKILL.

        An already-dead process is logged as a warning, not an error. A
        process that survives SIGKILL is logged as ProcessTerminationFailed
        and reported with stopped=False. A pid now held by some other
        program is treated as already dead and never signalled.
        """
        if not self.is_alive():
            logger.warning("No running FUSE process found with PID %d.", self.pid)
            return TerminationResult(pid=self.pid, was_alive=False)
        if not self.is_ours():
            logger.warning(
                "PID %d no longer belongs to the overlay for %s; not signalling it.",
                self.pid, self.mount_path,
            )
            return TerminationResult(pid=self.pid, was_alive=False)

        logger.info("Stopping FUSE process with PID %d...", self.pid)
        result = TerminationResult(pid=self.pid, was_alive=True)
        if self._signal(signal.SIGTERM) and not self._wait(grace):
            logger.info("FUSE process did not terminate, sending SIGKILL...")
            result.forced = True
            if self._signal(signal.SIGKILL) and not self._wait(grace):
                err = ProcessTerminationFailed(
                    f"FUSE process {self.pid} is still alive after SIGKILL"
                )
                logger.warning("%s", err)
                result.stopped = False
                return result
        logger.info("FUSE process stopped.")
        return result


@contextmanager
def terminate_on_failure(handle: OverlayProcess, grace: float = 1.0, on_abort=None):
    """
    Guarantee a termination attempt if the block exits abnormally.

    Covers every exception including KeyboardInterrupt. on_abort, if given,
    runs after termination (used to unmount a half-established mount).
    The original exception always propagates.
    """
    try:
        yield handle
    except BaseException:
        logger.warning("Workspace creation aborted; stopping FUSE process %d", handle.pid)
        try:
            handle.terminate(grace=grace)
            if on_abort is not None:
                on_abort()
        except Exception as e:
            logger.warning("Cleanup after failed creation incomplete: %s", e)
        raise
