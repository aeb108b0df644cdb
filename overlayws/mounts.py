"""
Mounts

Mount state is observed from the outside only: the overlay binary gives
no readiness signal, so we ask `mountpoint -q` (configurable) whether the
workspace's src/ is a mount point, and unmount with `fusermount -uz`.
"""

import logging
import subprocess
import time
from pathlib import Path

from .errors import MountTimeout, UnmountFailed

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 10


def is_mounted(mount_path: Path, command: list | None = None) -> bool:
    """True if mount_path is currently a mount point."""
    cmd = list(command or ["mountpoint", "-q"]) + [str(mount_path)]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_SECONDS
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("Mount probe %s failed: %s", cmd, exc)
        return False
    return result.returncode == 0


def unmount(mount_path: Path, command: list | None = None):
    """Unmount mount_path, raising UnmountFailed if the command fails."""
    cmd = list(command or ["fusermount", "-uz"]) + [str(mount_path)]
    try:
        result = subprocess.run(
            cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_SECONDS
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
        raise UnmountFailed(f"Failed to unmount {mount_path}: {exc}")
    if result.returncode != 0:
        raise UnmountFailed(
            f"Failed to unmount {mount_path}: {' '.join(cmd)} exited "
            f"{result.returncode}: {result.stderr.strip()}"
        )


def wait_for_mount(
    mount_path: Path,
    probe,
    attempts: int = 10,
    interval: float = 0.5,
    backoff: float = 1.0,
    still_running=None,
) -> float:
    """
    Poll probe(mount_path) until it reports a mount.

    Sleeps `interval` after each miss, multiplying it by `backoff`. Returns
    the time spent waiting. Raises MountTimeout once attempts run out.

    still_running, if given, is called before each probe; it should raise
    to abort the wait early (e.g. the overlay process has exited).
    """
    waited = 0.0
    delay = interval
    for attempt in range(1, attempts + 1):
        if still_running is not None:
            still_running(waited)
        if probe(mount_path):
            logger.debug("%s mounted after %d attempt(s)", mount_path, attempt)
            return waited
        time.sleep(delay)
        waited += delay
        delay *= backoff

    # One last look: the final sleep may have been the one that did it.
    if probe(mount_path):
        return waited
    if still_running is not None:
        still_running(waited)
    raise MountTimeout(mount_path, waited)
