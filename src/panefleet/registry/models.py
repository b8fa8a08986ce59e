"""Worker records persisted in the registry."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerStatus(str, Enum):
    """Lifecycle state of a worker."""

    SPAWNING = "spawning"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting-approval"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    DEAD = "dead"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({WorkerStatus.COMPLETED, WorkerStatus.BLOCKED, WorkerStatus.DEAD})


class Worker(BaseModel):
    """A registered handle binding an identifier to one or more panes."""

    id: str = Field(..., description="Unique worker identifier, usually the task reference.")
    primary_pane: str = Field(..., description="Pane address of the worker's main process.")
    sub_panes: list[str] = Field(
        default_factory=list,
        description="Additional panes split from the primary; index 0 is logical sub-pane 1.",
    )
    session_name: str = Field(..., description="Session that owns the primary pane.")
    created_at: datetime = Field(default_factory=utcnow)
    last_seen_at: datetime = Field(default_factory=utcnow)
    status: WorkerStatus = WorkerStatus.SPAWNING
    task_ref: str | None = Field(
        default=None, description="Opaque reference to the work item this worker serves."
    )
    window_name: str | None = None
    repo_path: str | None = None
    role: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Worker id must not be empty")
        return normalized

    @model_validator(mode="after")
    def _check_sub_panes(self) -> "Worker":
        if self.primary_pane in self.sub_panes:
            raise ValueError("sub_panes must not contain the primary pane")
        if len(set(self.sub_panes)) != len(self.sub_panes):
            raise ValueError("sub_panes must not contain duplicates")
        return self

    @property
    def panes(self) -> list[str]:
        """Primary pane followed by sub-panes, in logical index order."""

        return [self.primary_pane, *self.sub_panes]

    def pane_at(self, index: int) -> str | None:
        """Return the pane at logical ``index`` (0 = primary), or None when out of range."""

        if index < 0:
            return None
        panes = self.panes
        return panes[index] if index < len(panes) else None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


__all__ = ["TERMINAL_STATUSES", "Worker", "WorkerStatus", "utcnow"]
