"""
Errors

Every failure the lifecycle manager reports is a WorkspaceError. The CLI
catches the base class, prints the message and exits 1.

Two kinds are non-fatal: UnmountFailed and ProcessTerminationFailed are
logged and recorded in the cleanup report, but cleanup keeps going
because the end goal (workspace fully gone) should still be pursued.
"""


class WorkspaceError(Exception):
    """Base class for all workspace lifecycle errors."""


class InvalidArguments(WorkspaceError, ValueError):
    """Bad command-line or API arguments."""


class ConfigError(InvalidArguments):
    """Invalid configuration file, environment variable or override."""


class NotAGitRepository(WorkspaceError, ValueError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"{path} is not a valid git repository.")


class WorkspaceAlreadyExists(WorkspaceError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"Directory {path} already exists.")


class WorkspaceBusy(WorkspaceError):
    """Another create/cleanup holds the lock for this workspace name."""

    def __init__(self, name, owner: dict | None = None):
        self.name = name
        self.owner = owner or {}
        holder = ""
        if self.owner:
            holder = (
                f" (held by pid {self.owner.get('pid')} on "
                f"{self.owner.get('hostname')} for {self.owner.get('operation')})"
            )
        super().__init__(f"Workspace '{name}' is locked by another operation{holder}.")


class CloneFailed(WorkspaceError):
    pass


class OverlayLaunchFailed(WorkspaceError):
    pass


class MountTimeout(WorkspaceError):
    def __init__(self, mount_path, waited: float, message: str | None = None):
        self.mount_path = mount_path
        self.waited = waited
        super().__init__(
            message or f"Failed to mount filesystem at {mount_path} within {waited:.1f}s."
        )


class OverlayExited(MountTimeout):
    """The overlay process died before the mount became ready."""

    def __init__(self, mount_path, waited: float, returncode: int):
        self.returncode = returncode
        super().__init__(
            mount_path,
            waited,
            f"Overlay process exited with code {returncode} before "
            f"{mount_path} was mounted.",
        )


class HeadResolutionFailed(WorkspaceError):
    pass


class InvalidWorkspace(WorkspaceError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"'{path}' is not a valid workspace.")


class NoRecordedProcess(WorkspaceError):
    def __init__(self, pid_file, reason: str = "not found"):
        self.pid_file = pid_file
        super().__init__(f"FUSE PID file {reason} at {pid_file}.")


class UnmountFailed(WorkspaceError):
    pass


class ProcessTerminationFailed(WorkspaceError):
    pass


class MountStillActive(WorkspaceError):
    def __init__(self, mount_path):
        self.mount_path = mount_path
        super().__init__(
            f"{mount_path} is still mounted; refusing to remove the workspace.\n"
            f"  Unmount it manually (fusermount -uz {mount_path}) and re-run cleanup."
        )
