"""Configuration management for panefleet."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

REPO_STATE_DIRNAME = ".panefleet"


class FleetSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    state_dir: Path = Field(
        default=Path("~/.config/panefleet"), validation_alias="PANEFLEET_STATE_DIR"
    )
    repo_path: Path = Field(default=Path("."), validation_alias="PANEFLEET_REPO_PATH")
    registry_path: Path | None = Field(default=None, validation_alias="PANEFLEET_REGISTRY_PATH")
    batches_path: Path | None = Field(default=None, validation_alias="PANEFLEET_BATCHES_PATH")
    events_dir: Path | None = Field(default=None, validation_alias="PANEFLEET_EVENTS_DIR")
    tmux_path: str | None = Field(default=None, validation_alias="TMUX_PATH")
    log_level: str = Field(default="INFO", validation_alias="PANEFLEET_LOG_LEVEL")
    exec_timeout: float = Field(default=120.0, validation_alias="PANEFLEET_EXEC_TIMEOUT")
    poll_interval: float = Field(default=2.0, validation_alias="PANEFLEET_POLL_INTERVAL")
    default_session: str = Field(default="fleet", validation_alias="PANEFLEET_DEFAULT_SESSION")
    worker_command: str = Field(default="claude", validation_alias="PANEFLEET_WORKER_COMMAND")
    default_concurrency: int = Field(default=3, validation_alias="PANEFLEET_DEFAULT_CONCURRENCY")
    approve_keys: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("Enter",), validation_alias="PANEFLEET_APPROVE_KEYS"
    )
    audit_path: Path | None = Field(default=None, validation_alias="PANEFLEET_AUDIT_PATH")
    activity_backend: Literal["jsonl", "chroma"] = Field(
        default="jsonl", validation_alias="PANEFLEET_ACTIVITY_BACKEND"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "PANEFLEET_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("exec_timeout", "poll_interval")
    @classmethod
    def _validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return value

    @field_validator("default_concurrency")
    @classmethod
    def _validate_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PANEFLEET_DEFAULT_CONCURRENCY must be >= 1")
        return value

    @field_validator("approve_keys", mode="before")
    @classmethod
    def _parse_approve_keys(cls, value):
        if value is None or value == "":
            return ("Enter",)
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(",") if part.strip()]
            return tuple(parts) or ("Enter",)
        raise TypeError("PANEFLEET_APPROVE_KEYS must be a list of keys or a comma-separated string")

    @property
    def repo_state_dir(self) -> Path:
        return self.repo_path / REPO_STATE_DIRNAME

    def resolved_registry_path(self) -> Path:
        """Explicit path, else the repo-local state dir when it exists, else the global state dir."""

        if self.registry_path is not None:
            return self.registry_path
        if self.repo_state_dir.is_dir():
            return self.repo_state_dir / "workers.json"
        return self.state_dir / "workers.json"

    def resolved_batches_path(self) -> Path:
        if self.batches_path is not None:
            return self.batches_path
        return self.resolved_registry_path().parent / "batches.json"

    def resolved_events_dir(self) -> Path:
        if self.events_dir is not None:
            return self.events_dir
        return self.resolved_registry_path().parent / "events"

    def resolved_audit_path(self) -> Path:
        if self.audit_path is not None:
            return self.audit_path
        return self.resolved_registry_path().parent / "audit.jsonl"

    @property
    def global_policy_path(self) -> Path:
        return self.state_dir / "auto-approve.yaml"

    @property
    def repo_policy_path(self) -> Path:
        return self.repo_state_dir / "auto-approve.yaml"


@lru_cache(maxsize=1)
def get_settings() -> FleetSettings:
    """Return cached settings instance."""

    settings = FleetSettings()
    settings.state_dir = settings.state_dir.expanduser().resolve()
    settings.repo_path = settings.repo_path.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    for name in ("registry_path", "batches_path", "events_dir", "audit_path"):
        value = getattr(settings, name)
        if value is not None:
            setattr(settings, name, value.expanduser().resolve())
    return settings


__all__ = ["FleetSettings", "REPO_STATE_DIRNAME", "get_settings"]
