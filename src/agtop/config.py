"""Configuration management for agtop."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_BLOCKED_PATTERNS: tuple[str, ...] = (
    r"rm\s+-[rf]+\s+/",
    r"git\s+push.*--force",
    r"DROP\s+TABLE",
    r"(curl|wget).*\|\s*(sh|bash)",
    r"chmod\s+777",
    r":(){.*};",
)

_DEFAULT_WORKFLOW_PATHS = (Path(".agtop/workflows"),)


class AgtopSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    project_root: Path = Field(default=Path("."), validation_alias="AGTOP_PROJECT_ROOT")
    worktree_path: str | None = Field(default=None, validation_alias="AGTOP_WORKTREE_PATH")
    state_dir: Path | None = Field(default=None, validation_alias="AGTOP_STATE_DIR")
    runtime: str = Field(default="claude", validation_alias="AGTOP_RUNTIME")
    agent_command: str = Field(default="claude", validation_alias="AGTOP_AGENT_COMMAND")
    opencode_command: str = Field(default="opencode", validation_alias="AGTOP_OPENCODE_COMMAND")
    opencode_agent: str | None = Field(default=None, validation_alias="AGTOP_OPENCODE_AGENT")
    agent_model: str | None = Field(default=None, validation_alias="AGTOP_AGENT_MODEL")
    permission_mode: str | None = Field(
        default="acceptEdits", validation_alias="AGTOP_PERMISSION_MODE"
    )
    max_turns: int = Field(default=50, validation_alias="AGTOP_MAX_TURNS")
    blocked_patterns: tuple[str, ...] = Field(
        default=DEFAULT_BLOCKED_PATTERNS, validation_alias="AGTOP_BLOCKED_PATTERNS"
    )
    workflow_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=_DEFAULT_WORKFLOW_PATHS, validation_alias="AGTOP_WORKFLOW_PATHS"
    )
    ring_buffer_capacity: int = Field(default=10000, validation_alias="AGTOP_RING_BUFFER_CAPACITY")
    entry_buffer_capacity: int = Field(
        default=5000, validation_alias="AGTOP_ENTRY_BUFFER_CAPACITY"
    )
    cancel_grace_seconds: float = Field(
        default=5.0, validation_alias="AGTOP_CANCEL_GRACE_SECONDS"
    )
    max_concurrent_runs: int = Field(default=5, validation_alias="AGTOP_MAX_CONCURRENT_RUNS")
    max_cost_per_run: float = Field(default=5.0, validation_alias="AGTOP_MAX_COST_PER_RUN")
    max_tokens_per_run: int = Field(default=500000, validation_alias="AGTOP_MAX_TOKENS_PER_RUN")
    stale_session_days: int = Field(default=7, validation_alias="AGTOP_STALE_SESSION_DAYS")
    log_level: str = Field(default="INFO", validation_alias="AGTOP_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AGTOP_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("runtime")
    @classmethod
    def _normalize_runtime(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"claude", "opencode"}:
            raise ValueError("AGTOP_RUNTIME must be claude or opencode")
        return normalized

    @field_validator("workflow_paths", mode="before")
    @classmethod
    def _parse_workflow_paths(cls, value):
        if value is None or value == "":
            return _DEFAULT_WORKFLOW_PATHS
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or _DEFAULT_WORKFLOW_PATHS
        raise TypeError("AGTOP_WORKFLOW_PATHS must be a list of paths or a path-separated string")

    @field_validator("ring_buffer_capacity", "entry_buffer_capacity", "max_turns")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("buffer capacities and max_turns must be >= 1")
        return value

    @field_validator(
        "cancel_grace_seconds",
        "max_concurrent_runs",
        "max_cost_per_run",
        "max_tokens_per_run",
        "stale_session_days",
    )
    @classmethod
    def _validate_non_negative(cls, value):
        if value < 0:
            raise ValueError("limits must not be negative")
        return value

    def resolved_project_root(self) -> Path:
        return self.project_root.expanduser().resolve()

    def resolved_worktree_root(self) -> Path:
        """Return the directory under which per-run worktrees are created."""

        project = self.resolved_project_root()
        if not self.worktree_path:
            return project / ".agtop" / "worktrees"
        raw = self.worktree_path
        if raw.startswith("~/"):
            return (Path.home() / raw[2:]).resolve()
        path = Path(raw)
        if not path.is_absolute():
            path = project / path
        return path.resolve()

    def resolved_state_dir(self) -> Path:
        """Return the project-local directory holding session files and logs."""

        if self.state_dir is None:
            return self.resolved_project_root() / ".agtop" / "sessions"
        path = self.state_dir.expanduser()
        if not path.is_absolute():
            path = self.resolved_project_root() / path
        return path.resolve()

    def resolved_workflow_paths(self) -> tuple[Path, ...]:
        project = self.resolved_project_root()
        resolved = []
        for path in self.workflow_paths:
            path = path.expanduser()
            if not path.is_absolute():
                path = project / path
            resolved.append(path.resolve())
        return tuple(resolved)


@lru_cache(maxsize=1)
def get_settings() -> AgtopSettings:
    """Return cached settings instance."""

    settings = AgtopSettings()
    settings.project_root = settings.project_root.expanduser().resolve()
    return settings


__all__ = ["AgtopSettings", "DEFAULT_BLOCKED_PATTERNS", "get_settings"]
