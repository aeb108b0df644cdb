"""
overlayws — Git workspaces backed by a FUSE overlay

Creates lightweight git workspaces whose working tree is a FUSE-mounted
view of a master repository, so many workspaces share one object store
without copying file content, and tears them down again.
"""

__version__ = "0.1.0"

__all__ = [
    # Lifecycle
    "WorkspaceManager",
    "Workspace",
    "WorkspaceInfo",
    "WorkspaceStatus",
    "CleanupReport",
    "create",
    "cleanup",
    "status",
    # Overlay process
    "OverlayProcess",
    # Configuration
    "Settings",
    "load_settings",
    # Errors
    "WorkspaceError",
]

_WORKSPACE_NAMES = (
    "WorkspaceManager",
    "Workspace",
    "WorkspaceInfo",
    "WorkspaceStatus",
    "CleanupReport",
    "create",
    "cleanup",
    "status",
)


# Lazy imports: resolved on first access
def __getattr__(name):
    if name in _WORKSPACE_NAMES:
        from . import workspace

        return getattr(workspace, name)
    if name == "OverlayProcess":
        from .process import OverlayProcess

        return OverlayProcess
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings

        return Settings if name == "Settings" else load_settings
    if name == "WorkspaceError":
        from .errors import WorkspaceError

        return WorkspaceError
    raise AttributeError(f"module 'overlayws' has no attribute {name!r}")
