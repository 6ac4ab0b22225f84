"""Whole-document JSON snapshots of the orchestrator's collections."""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from ..sessions.models import AppSettings, Session, WorkTask, Workspace

logger = logging.getLogger(__name__)

WORKSPACES_FILE = "workspaces.json"
TASKS_FILE = "tasks.json"
SESSIONS_FILE = "sessions.json"
SETTINGS_FILE = "settings.json"

T = TypeVar("T")

_WORKSPACES = TypeAdapter(list[Workspace])
_TASKS = TypeAdapter(list[WorkTask])
_SESSIONS = TypeAdapter(list[Session])


class SnapshotError(RuntimeError):
    """Raised when a snapshot cannot be written."""


class SnapshotStore:
    """Persist each collection as one JSON document under ``data_dir``.

    Saves overwrite the whole document atomically. Loads treat a missing
    document as empty; unreadable documents are logged and treated the same way.
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def path_for(self, filename: str) -> Path:
        return self._data_dir / filename

    def exists(self, filename: str) -> bool:
        return self.path_for(filename).is_file()

    def _write(self, filename: str, payload: bytes) -> None:
        target = self.path_for(filename)
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{filename}.", dir=self._data_dir)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                os.replace(tmp_name, target)
            except BaseException:
                with suppress(OSError):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise SnapshotError(f"Failed to write {target}: {exc}") from exc

    def _read(self, filename: str, adapter: TypeAdapter[T], default: T) -> T:
        path = self.path_for(filename)
        if not path.is_file():
            return default
        try:
            return adapter.validate_json(path.read_bytes())
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning(
                "Ignoring unreadable snapshot",
                extra={"path": str(path), "error": str(exc)},
            )
            return default

    def save_workspaces(self, workspaces: list[Workspace]) -> None:
        self._write(WORKSPACES_FILE, _WORKSPACES.dump_json(workspaces, indent=2))

    def save_tasks(self, tasks: list[WorkTask]) -> None:
        self._write(TASKS_FILE, _TASKS.dump_json(tasks, indent=2))

    def save_sessions(self, sessions: list[Session]) -> None:
        self._write(SESSIONS_FILE, _SESSIONS.dump_json(sessions, indent=2))

    def save_settings(self, settings: AppSettings) -> None:
        self._write(SETTINGS_FILE, settings.model_dump_json(indent=2).encode("utf-8"))

    def load_workspaces(self) -> list[Workspace]:
        return self._read(WORKSPACES_FILE, _WORKSPACES, [])

    def load_tasks(self) -> list[WorkTask]:
        return self._read(TASKS_FILE, _TASKS, [])

    def load_sessions(self) -> list[Session]:
        return self._read(SESSIONS_FILE, _SESSIONS, [])

    def load_settings(self) -> AppSettings | None:
        """Return the stored settings, or ``None`` when no usable snapshot exists."""

        return self._read(SETTINGS_FILE, TypeAdapter(AppSettings), None)

    def dump(self) -> dict[str, Any]:
        """Return every snapshot as plain JSON-compatible data."""

        settings = self.load_settings()
        return {
            "workspaces": [_plain(item) for item in self.load_workspaces()],
            "tasks": [_plain(item) for item in self.load_tasks()],
            "sessions": [_plain(item) for item in self.load_sessions()],
            "settings": _plain(settings) if settings is not None else None,
        }


def _plain(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json")


__all__ = [
    "SESSIONS_FILE",
    "SETTINGS_FILE",
    "SnapshotError",
    "SnapshotStore",
    "TASKS_FILE",
    "WORKSPACES_FILE",
]
