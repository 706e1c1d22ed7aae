"""Configuration management for threadloom."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ThreadloomSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_path: Path = Field(
        default=Path("~/.threadloom/state.json"), validation_alias="THREADLOOM_STATE_PATH"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    profile_paths: tuple[Path, ...] = Field(
        default=(Path("profiles"),), validation_alias="THREADLOOM_PROFILE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="THREADLOOM_LOG_LEVEL")
    session_prefix: str = Field(default="app", validation_alias="THREADLOOM_SESSION_PREFIX")
    tmux_path: str | None = Field(default=None, validation_alias="TMUX_PATH")
    git_path: str | None = Field(default=None, validation_alias="GIT_PATH")
    user_shell: str = Field(
        default_factory=lambda: os.environ.get("SHELL") or "/bin/zsh",
        validation_alias="THREADLOOM_SHELL",
    )
    command_timeout: float = Field(default=15.0, validation_alias="THREADLOOM_COMMAND_TIMEOUT")
    slug_timeout: float = Field(default=15.0, validation_alias="THREADLOOM_SLUG_TIMEOUT")
    sweep_interval: float = Field(default=3.0, validation_alias="THREADLOOM_SWEEP_INTERVAL")
    sample_interval: float = Field(default=1.0, validation_alias="THREADLOOM_SAMPLE_INTERVAL")
    dirty_refresh_every: int = Field(default=10, validation_alias="THREADLOOM_DIRTY_REFRESH_EVERY")
    save_delay: float = Field(default=0.5, validation_alias="THREADLOOM_SAVE_DELAY")
    injection_delay: float = Field(default=0.5, validation_alias="THREADLOOM_INJECTION_DELAY")
    prompt_delay: float = Field(default=2.5, validation_alias="THREADLOOM_PROMPT_DELAY")
    recreate_alert_threshold: int = Field(
        default=3, validation_alias="THREADLOOM_RECREATE_ALERT_THRESHOLD"
    )
    protect_main_tab: bool = Field(default=True, validation_alias="THREADLOOM_PROTECT_MAIN_TAB")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "THREADLOOM_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError(
            "THREADLOOM_PROFILE_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("session_prefix")
    @classmethod
    def _validate_session_prefix(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not (normalized.isascii() and normalized.isalnum()):
            raise ValueError("THREADLOOM_SESSION_PREFIX must be alphanumeric")
        return normalized

    @field_validator("recreate_alert_threshold", "dirty_refresh_every")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("threshold values must be >= 1")
        return value

    @field_validator("command_timeout", "slug_timeout", "sweep_interval", "sample_interval")
    @classmethod
    def _validate_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and intervals must be positive")
        return value


@lru_cache(maxsize=1)
def get_settings() -> ThreadloomSettings:
    """Return cached settings instance."""

    settings = ThreadloomSettings()
    settings.state_path = settings.state_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["ThreadloomSettings", "get_settings"]
