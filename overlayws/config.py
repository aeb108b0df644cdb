"""
Configuration

Settings are layered, later sources winning:

    defaults
    JSON file    (--config, else $OVERLAYWS_CONFIG, else
                  ~/.config/overlayws/config.json when it exists)
    environment  (OVERLAYWS_<FIELD>, e.g. OVERLAYWS_MOUNT_ATTEMPTS=20)
    overrides    (CLI flags, keyword arguments)

Example config.json:

    {
        "overlay_binary": "/opt/git_fuse_overlay/bin/git_fuse_overlay",
        "mount_attempts": 20,
        "unmount_command": "umount"
    }
"""

import json
import os
import shlex
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from .errors import ConfigError

ENV_PREFIX = "OVERLAYWS_"
CONFIG_ENV_VAR = "OVERLAYWS_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/overlayws/config.json")


@dataclass(frozen=True)
class Settings:
    overlay_binary: str = "git_fuse_overlay"

    # Mount readiness: attempts x interval, interval multiplied by backoff
    # after each miss. The defaults give a 5 second ceiling.
    mount_attempts: int = 10
    mount_interval: float = 0.5
    mount_backoff: float = 1.0

    termination_grace: float = 1.0
    unmount_retry_delay: float = 2.0

    mountpoint_command: list = field(default_factory=lambda: ["mountpoint", "-q"])
    unmount_command: list = field(default_factory=lambda: ["fusermount", "-uz"])

    clone_depth: int = 1
    git_timeout: float = 60
    clone_timeout: float = 600

    def __post_init__(self):
        if self.mount_attempts < 1:
            raise ConfigError(f"mount_attempts must be >= 1, got {self.mount_attempts}")
        if self.clone_depth < 1:
            raise ConfigError(f"clone_depth must be >= 1, got {self.clone_depth}")
        if self.mount_backoff < 1:
            raise ConfigError(f"mount_backoff must be >= 1.0, got {self.mount_backoff}")
        for name in ("mount_interval", "termination_grace", "unmount_retry_delay",
                     "git_timeout", "clone_timeout"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if not self.overlay_binary:
            raise ConfigError("overlay_binary must not be empty")
        for name in ("mountpoint_command", "unmount_command"):
            if not getattr(self, name):
                raise ConfigError(f"{name} must not be empty")

    @property
    def mount_wait_ceiling(self) -> float:
        """Longest time wait_for_mount can sleep with these settings."""
        total = 0.0
        interval = self.mount_interval
        for _ in range(self.mount_attempts):
            total += interval
            interval *= self.mount_backoff
        return total

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


_FIELD_TYPES = {
    "overlay_binary": str,
    "mount_attempts": int,
    "mount_interval": float,
    "mount_backoff": float,
    "termination_grace": float,
    "unmount_retry_delay": float,
    "mountpoint_command": list,
    "unmount_command": list,
    "clone_depth": int,
    "git_timeout": float,
    "clone_timeout": float,
}


def _coerce(name: str, value, source: str):
    """Convert a raw config value to the field's type."""
    if name not in _FIELD_TYPES:
        raise ConfigError(f"Unknown setting '{name}' in {source}")
    kind = _FIELD_TYPES[name]
    if kind is list:
        if isinstance(value, str):
            value = shlex.split(value)
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{name} in {source} must be a command string or list of strings")
        return value
    if isinstance(value, bool):
        raise ConfigError(f"{name} in {source} must be a {kind.__name__}, got {value!r}")
    try:
        if kind is int and isinstance(value, float) and not value.is_integer():
            raise ValueError(value)
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} in {source} must be a {kind.__name__}, got {value!r}")


def _read_config_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return {k: _coerce(k, v, str(path)) for k, v in data.items()}


def _read_environment(environ) -> dict:
    values = {}
    for name in _FIELD_TYPES:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = _coerce(name, raw, f"${ENV_PREFIX}{name.upper()}")
    return values


def _config_path(explicit, environ) -> Path | None:
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path
    from_env = environ.get(CONFIG_ENV_VAR)
    if from_env:
        path = Path(from_env).expanduser()
        if not path.exists():
            raise ConfigError(f"Config file not found: {path} (from ${CONFIG_ENV_VAR})")
        return path
    default = DEFAULT_CONFIG_PATH.expanduser()
    return default if default.exists() else None


def load_settings(config_path=None, environ=None, **overrides) -> Settings:
    """Build Settings from config file, environment and explicit overrides.

    Overrides whose value is None are ignored so argparse defaults can be
    passed straight through.
    """
    if environ is None:
        environ = os.environ

    values = {}
    path = _config_path(config_path, environ)
    if path is not None:
        values.update(_read_config_file(path))
    values.update(_read_environment(environ))
    for name, value in overrides.items():
        if value is not None:
            values[name] = _coerce(name, value, "overrides")

    try:
        return replace(Settings(), **values)
    except TypeError as e:
        raise ConfigError(str(e))
