"""Seed user settings from a YAML document."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from ..sessions.models import AppSettings


class SettingsLoadError(RuntimeError):
    """Raised when a settings file cannot be parsed or validated."""


def load_settings_file(path: Path) -> AppSettings:
    """Load ``AppSettings`` from a YAML mapping.

    Keys missing from the file keep their defaults; an empty file yields the
    defaults. Unknown keys are rejected so typos do not go unnoticed.
    """

    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise SettingsLoadError(f"Cannot read settings file {path}: {exc}") from exc
    except yaml.YAMLError as exc:  # pragma: no cover - library type
        raise SettingsLoadError(f"Failed to parse YAML in {path}: {exc}") from exc

    if document is None:
        return AppSettings()
    if not isinstance(document, dict):
        raise SettingsLoadError(f"Settings file {path} must contain a mapping")

    unknown = sorted(set(document) - set(AppSettings.model_fields))
    if unknown:
        raise SettingsLoadError(
            f"Unknown settings in {path}: " + ", ".join(str(key) for key in unknown)
        )

    try:
        return AppSettings.model_validate(document)
    except ValidationError as exc:
        raise SettingsLoadError(f"Settings validation error in {path}: {exc}") from exc


__all__ = ["SettingsLoadError", "load_settings_file"]
