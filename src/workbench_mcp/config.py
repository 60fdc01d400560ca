"""Configuration management for Workbench."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class WorkbenchSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    agent_path: str | None = Field(default=None, validation_alias="AGENT_PATH")
    agent_default_model: str | None = Field(default=None, validation_alias="AGENT_DEFAULT_MODEL")
    agent_flags: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("--print",), validation_alias="WORKBENCH_AGENT_FLAGS"
    )
    workspace_root: Path = Field(
        default=Path("./workspaces"), validation_alias="WORKBENCH_WORKSPACE_ROOT"
    )
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="WORKBENCH_PROFILE_PATHS"
    )
    default_profile: str = Field(default="workspace", validation_alias="WORKBENCH_DEFAULT_PROFILE")

    max_workers: int = Field(default=4, validation_alias="WORKBENCH_MAX_WORKERS")
    max_queue_depth: int = Field(default=32, validation_alias="WORKBENCH_MAX_QUEUE_DEPTH")
    admission_timeout_seconds: float = Field(
        default=30.0, validation_alias="WORKBENCH_ADMISSION_TIMEOUT"
    )
    execution_timeout_seconds: float = Field(
        default=600.0, validation_alias="WORKBENCH_EXECUTION_TIMEOUT"
    )
    agent_kill_grace_seconds: float = Field(default=5.0, validation_alias="WORKBENCH_KILL_GRACE")

    history_max_turns: int = Field(default=20, validation_alias="WORKBENCH_HISTORY_MAX_TURNS")
    history_max_chars: int = Field(default=16000, validation_alias="WORKBENCH_HISTORY_MAX_CHARS")

    git_author_name: str = Field(default="AI Architect", validation_alias="WORKBENCH_GIT_AUTHOR_NAME")
    git_author_email: str = Field(
        default="ai-architect@localhost", validation_alias="WORKBENCH_GIT_AUTHOR_EMAIL"
    )
    git_timeout_seconds: float = Field(default=60.0, validation_alias="WORKBENCH_GIT_TIMEOUT")

    host: str = Field(default="127.0.0.1", validation_alias="WORKBENCH_HOST")
    port: int = Field(default=3001, validation_alias="WORKBENCH_PORT")
    execution_upstream_url: str | None = Field(default=None, validation_alias="WORKBENCH_UPSTREAM_URL")

    log_level: str = Field(default="INFO", validation_alias="WORKBENCH_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "WORKBENCH_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
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
            "WORKBENCH_PROFILE_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("agent_flags", mode="before")
    @classmethod
    def _parse_agent_flags(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(value.split())
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise TypeError("WORKBENCH_AGENT_FLAGS must be a list or a whitespace-separated string")

    @field_validator("max_workers")
    @classmethod
    def _validate_max_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("WORKBENCH_MAX_WORKERS must be >= 1")
        return value

    @field_validator("max_queue_depth", "history_max_turns", "history_max_chars")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("queue depth and history limits must be >= 0")
        return value

    @field_validator(
        "execution_timeout_seconds", "admission_timeout_seconds", "git_timeout_seconds"
    )
    @classmethod
    def _validate_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be greater than zero")
        return value

    @field_validator("agent_kill_grace_seconds")
    @classmethod
    def _validate_kill_grace(cls, value: float) -> float:
        if value < 0:
            raise ValueError("WORKBENCH_KILL_GRACE must be >= 0")
        return value


@lru_cache(maxsize=1)
def get_settings() -> WorkbenchSettings:
    """Return cached settings instance."""

    settings = WorkbenchSettings()
    settings.workspace_root = settings.workspace_root.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["WorkbenchSettings", "get_settings"]
