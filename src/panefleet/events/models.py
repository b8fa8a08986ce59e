"""Events observed from worker streams and the per-worker state derived from them."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..registry.models import WorkerStatus, utcnow


class EventKind(str, Enum):
    SESSION_START = "session-start"
    TOOL_INVOCATION = "tool-invocation"
    APPROVAL_REQUEST = "approval-request"
    COMPLETION = "completion"
    ERROR = "error"
    SESSION_END = "session-end"


# Hook streams name a few kinds differently.
_KIND_ALIASES = {
    "tool-call": EventKind.TOOL_INVOCATION,
    "tool-use": EventKind.TOOL_INVOCATION,
    "permission-request": EventKind.APPROVAL_REQUEST,
    "stop": EventKind.SESSION_END,
}

STATUS_BY_KIND = {
    EventKind.SESSION_START: WorkerStatus.RUNNING,
    EventKind.TOOL_INVOCATION: WorkerStatus.RUNNING,
    EventKind.APPROVAL_REQUEST: WorkerStatus.WAITING_APPROVAL,
    EventKind.COMPLETION: WorkerStatus.COMPLETED,
    EventKind.SESSION_END: WorkerStatus.COMPLETED,
    EventKind.ERROR: WorkerStatus.BLOCKED,
}


class Event(BaseModel):
    """One observation from a worker's event stream."""

    worker_id: str
    kind: EventKind
    timestamp: datetime = Field(default_factory=utcnow)
    payload: dict[str, Any] = Field(default_factory=dict)
    tool_name: str | None = Field(default=None, description="Tool named by the event, if any.")
    tool_input: dict[str, Any] | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            return _KIND_ALIASES.get(normalized, normalized)
        return value

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


@dataclass(slots=True)
class PendingPrompt:
    """An approval prompt waiting on a decision."""

    detected_at: datetime
    source: str
    tool_name: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "detected_at": self.detected_at.isoformat(),
            "source": self.source,
            "tool_name": self.tool_name,
            "tool_input": dict(self.tool_input),
            "text": self.text,
        }


@dataclass(slots=True)
class WorkerStateView:
    """Snapshot returned to callers; ``seconds_since_last_event`` is computed when built."""

    worker_id: str
    status: WorkerStatus
    last_event: Event | None
    last_seen_at: datetime | None
    seconds_since_last_event: float | None
    degraded: bool
    pending_prompt: PendingPrompt | None
    event_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.status.value,
            "last_event": self.last_event.model_dump(mode="json") if self.last_event else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "seconds_since_last_event": self.seconds_since_last_event,
            "degraded": self.degraded,
            "pending_prompt": self.pending_prompt.to_dict() if self.pending_prompt else None,
            "event_count": self.event_count,
        }


__all__ = [
    "Event",
    "EventKind",
    "PendingPrompt",
    "STATUS_BY_KIND",
    "WorkerStateView",
]
