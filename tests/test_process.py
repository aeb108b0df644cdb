"""OverlayProcess handle: launch, serialization, liveness and termination."""

import os
import signal
import subprocess
import sys
import time

import pytest

from overlayws import process
from overlayws.errors import NoRecordedProcess, OverlayLaunchFailed
from overlayws.process import (
    OverlayProcess,
    is_process_alive,
    read_cmdline,
    terminate_on_failure,
)

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]
STUBBORN = [
    sys.executable, "-c",
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n",
]

needs_proc = pytest.mark.skipif(not os.path.exists("/proc/self/cmdline"), reason="needs /proc")


@pytest.fixture
def paths(tmp_path):
    mount = tmp_path / "src"
    mount.mkdir()
    return mount, tmp_path / "fuse_pid"


@pytest.fixture
def spawned():
    """Spawn helper processes and make sure none outlive the test."""
    procs = []

    def spawn(cmd, **kwargs):
        proc = subprocess.Popen(cmd, **kwargs)
        procs.append(proc)
        return proc

    yield spawn
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def _execed(proc, last_arg):
    """True once the child shows its own argv rather than the parent's."""
    argv = read_cmdline(proc.pid)
    return argv is None or argv[-1:] == [last_arg]


class TestIsProcessAlive:
    def test_self_is_alive(self):
        assert is_process_alive(os.getpid())

    def test_exited_child_is_not_alive(self, spawned):
        proc = spawned([sys.executable, "-c", "pass"])
        # Not waited on: the zombie must still read as dead.
        assert _wait_until(lambda: not is_process_alive(proc.pid))

    def test_running_child_is_alive(self, spawned):
        proc = spawned(SLEEPER)
        assert is_process_alive(proc.pid)


class TestSerialization:
    def test_launch_records_pid(self, fake_tools, paths, tmp_path):
        mount, pid_file = paths
        handle = OverlayProcess.launch(str(fake_tools.overlay), tmp_path, mount, pid_file)
        try:
            assert pid_file.read_text().strip() == str(handle.pid)
            assert handle.is_alive()
            assert _wait_until(lambda: (mount / ".fake_mounted").exists())
        finally:
            handle.terminate(grace=2.0)

    def test_launch_writes_log(self, fake_tools, paths, tmp_path, monkeypatch):
        mount, pid_file = paths
        monkeypatch.setenv("FAKE_OVERLAY_MODE", "exit")
        log = tmp_path / "overlay.log"
        handle = OverlayProcess.launch(str(fake_tools.overlay), tmp_path, mount, pid_file,
                                       log_path=log)
        assert _wait_until(lambda: handle.returncode() is not None)
        assert handle.returncode() == 3
        assert log.exists()

    def test_launch_missing_binary(self, paths, tmp_path):
        mount, pid_file = paths
        with pytest.raises(OverlayLaunchFailed):
            OverlayProcess.launch(str(tmp_path / "missing"), tmp_path, mount, pid_file)
        assert not pid_file.exists()

    def test_load_round_trip(self, paths):
        mount, pid_file = paths
        OverlayProcess(pid=4242, mount_path=mount, pid_file=pid_file).save()
        handle = OverlayProcess.load(mount, pid_file)
        assert handle.pid == 4242
        assert handle.popen is None

    def test_load_missing(self, paths):
        mount, pid_file = paths
        with pytest.raises(NoRecordedProcess, match="not found"):
            OverlayProcess.load(mount, pid_file)

    @pytest.mark.parametrize("content", ["", "abc", "-5", "0"])
    def test_load_garbage(self, paths, content):
        mount, pid_file = paths
        pid_file.write_text(content)
        with pytest.raises(NoRecordedProcess):
            OverlayProcess.load(mount, pid_file)

    def test_forget(self, paths):
        mount, pid_file = paths
        handle = OverlayProcess(pid=1, mount_path=mount, pid_file=pid_file)
        handle.save()
        handle.forget()
        assert not pid_file.exists()
        handle.forget()  # already gone is fine


class TestTerminate:
    def test_graceful(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        result = OverlayProcess(proc.pid, mount, pid_file, popen=proc).terminate(grace=2.0)
        assert result.was_alive and result.stopped
        assert not result.forced
        assert proc.returncode == -signal.SIGTERM

    def test_escalates_to_sigkill(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(STUBBORN, stdout=subprocess.PIPE, text=True)
        assert proc.stdout.readline().strip() == "ready"
        result = OverlayProcess(proc.pid, mount, pid_file, popen=proc).terminate(grace=0.3)
        assert result.forced and result.stopped
        assert proc.returncode == -signal.SIGKILL

    def test_loaded_handle_terminates_by_pid(self, spawned, paths):
        mount, pid_file = paths
        # Like the overlay, the process names its mount point in argv
        proc = spawned(SLEEPER + [str(mount)])
        assert _wait_until(lambda: _execed(proc, str(mount)))
        OverlayProcess(proc.pid, mount, pid_file).save()

        handle = OverlayProcess.load(mount, pid_file)
        result = handle.terminate(grace=2.0)

        assert result.was_alive and result.stopped
        assert not is_process_alive(proc.pid)

    @needs_proc
    def test_reused_pid_is_not_signalled(self, spawned, paths, caplog):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        assert _wait_until(lambda: _execed(proc, SLEEPER[-1]))
        OverlayProcess(proc.pid, mount, pid_file).save()

        handle = OverlayProcess.load(mount, pid_file)
        result = handle.terminate(grace=0.3)

        assert not result.was_alive
        assert proc.poll() is None
        assert "no longer belongs to the overlay" in caplog.text

    def test_already_dead_is_a_warning(self, spawned, paths, caplog):
        mount, pid_file = paths
        proc = spawned([sys.executable, "-c", "pass"])
        proc.wait()
        result = OverlayProcess(proc.pid, mount, pid_file, popen=proc).terminate()
        assert not result.was_alive
        assert "No running FUSE process" in caplog.text


class TestOwnership:
    def test_launched_handle_is_ours(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        assert OverlayProcess(proc.pid, mount, pid_file, popen=proc).is_ours()

    @needs_proc
    def test_loaded_handle_checks_argv(self, spawned, paths, tmp_path):
        mount, pid_file = paths
        # Reached through a symlinked parent, still the same mount point
        (tmp_path / "link").symlink_to(tmp_path)
        ours = spawned(SLEEPER + [str(tmp_path / "link" / "src")])
        other = spawned(SLEEPER + [str(tmp_path / "elsewhere" / "src")])
        assert _wait_until(lambda: _execed(ours, str(tmp_path / "link" / "src")))
        assert _wait_until(lambda: _execed(other, str(tmp_path / "elsewhere" / "src")))
        assert OverlayProcess(ours.pid, mount, pid_file).is_ours()
        assert not OverlayProcess(other.pid, mount, pid_file).is_ours()

    @needs_proc
    def test_read_cmdline(self, spawned):
        proc = spawned(SLEEPER + ["marker-arg"])
        assert _wait_until(lambda: read_cmdline(proc.pid)[-1:] == ["marker-arg"])

    def test_no_proc_trusts_pid(self, paths, monkeypatch, tmp_path):
        mount, pid_file = paths
        monkeypatch.setattr(process, "_PROC_ROOT", tmp_path / "no-proc")
        assert read_cmdline(os.getpid()) is None
        assert OverlayProcess(os.getpid(), mount, pid_file).is_ours()


class TestTerminateOnFailure:
    def test_exception_stops_process(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        handle = OverlayProcess(proc.pid, mount, pid_file, popen=proc)
        aborted = []

        with pytest.raises(RuntimeError, match="boom"):
            with terminate_on_failure(handle, grace=2.0, on_abort=lambda: aborted.append(1)):
                raise RuntimeError("boom")

        assert proc.poll() is not None
        assert aborted == [1]

    def test_keyboard_interrupt_stops_process(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        handle = OverlayProcess(proc.pid, mount, pid_file, popen=proc)

        with pytest.raises(KeyboardInterrupt):
            with terminate_on_failure(handle, grace=2.0):
                raise KeyboardInterrupt

        assert proc.poll() is not None

    def test_success_leaves_process_running(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        handle = OverlayProcess(proc.pid, mount, pid_file, popen=proc)

        with terminate_on_failure(handle, grace=2.0):
            pass

        assert proc.poll() is None

    def test_original_error_survives_failing_abort_hook(self, spawned, paths):
        mount, pid_file = paths
        proc = spawned(SLEEPER)
        handle = OverlayProcess(proc.pid, mount, pid_file, popen=proc)

        def broken_hook():
            raise OSError("unmount exploded")

        with pytest.raises(ValueError, match="original"):
            with terminate_on_failure(handle, grace=2.0, on_abort=broken_hook):
                raise ValueError("original")
