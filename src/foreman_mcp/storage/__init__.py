"""Storage abstractions for Foreman MCP."""

from .settings_file import SettingsLoadError, load_settings_file
from .snapshots import SnapshotError, SnapshotStore

__all__ = [
    "SettingsLoadError",
    "SnapshotError",
    "SnapshotStore",
    "load_settings_file",
]
