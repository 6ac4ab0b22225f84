"""Configuration management for Foreman MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ForemanSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    data_dir: Path = Field(
        default=Path("~/.foreman/data"), validation_alias="FOREMAN_DATA_DIR"
    )
    logs_dir: Path = Field(
        default=Path("~/.foreman/logs"), validation_alias="FOREMAN_LOGS_DIR"
    )
    log_level: str = Field(default="INFO", validation_alias="FOREMAN_LOG_LEVEL")
    sweep_interval_seconds: float = Field(
        default=30.0, validation_alias="FOREMAN_SWEEP_INTERVAL_SECONDS"
    )
    stop_grace_seconds: float = Field(
        default=5.0, validation_alias="FOREMAN_STOP_GRACE_SECONDS"
    )
    settings_file: Path | None = Field(default=None, validation_alias="FOREMAN_SETTINGS_FILE")
    git_path: str = Field(default="git", validation_alias="FOREMAN_GIT_PATH")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FOREMAN_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("sweep_interval_seconds")
    @classmethod
    def _validate_sweep_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("FOREMAN_SWEEP_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("stop_grace_seconds")
    @classmethod
    def _validate_stop_grace(cls, value: float) -> float:
        if value < 0:
            raise ValueError("FOREMAN_STOP_GRACE_SECONDS must be >= 0")
        return value

    @field_validator("settings_file", mode="before")
    @classmethod
    def _parse_settings_file(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value


@lru_cache(maxsize=1)
def get_settings() -> ForemanSettings:
    """Return cached settings instance."""

    settings = ForemanSettings()
    settings.data_dir = settings.data_dir.expanduser().resolve()
    settings.logs_dir = settings.logs_dir.expanduser().resolve()
    if settings.settings_file is not None:
        settings.settings_file = settings.settings_file.expanduser().resolve()
    return settings


__all__ = ["ForemanSettings", "get_settings"]
