"""Batch records and status roll-ups."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..registry.models import WorkerStatus, utcnow


class BatchStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_BLOCKED = "partially-blocked"
    CANCELLED = "cancelled"


class MemberStatus(str, Enum):
    """Per-task state inside a batch; mirrors WorkerStatus plus queue states."""

    QUEUED = "queued"
    SPAWNING = "spawning"
    RUNNING = "running"
    WAITING_APPROVAL = "waiting-approval"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    DEAD = "dead"
    CANCELLED = "cancelled"

    @classmethod
    def from_worker(cls, status: WorkerStatus | str) -> "MemberStatus":
        return cls(WorkerStatus(status).value)

    @property
    def active(self) -> bool:
        return self in ACTIVE_MEMBER_STATUSES

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_MEMBER_STATUSES


ACTIVE_MEMBER_STATUSES = frozenset(
    {MemberStatus.SPAWNING, MemberStatus.RUNNING, MemberStatus.WAITING_APPROVAL}
)
TERMINAL_MEMBER_STATUSES = frozenset(
    {MemberStatus.COMPLETED, MemberStatus.BLOCKED, MemberStatus.DEAD, MemberStatus.CANCELLED}
)


class BatchMember(BaseModel):
    task_ref: str
    status: MemberStatus = MemberStatus.QUEUED
    worker_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class Batch(BaseModel):
    """A group of task refs spawned together under one concurrency ceiling."""

    id: str = Field(..., description="Sequential identifier such as batch-001.")
    task_refs: list[str] = Field(..., description="Task refs in submission order.")
    concurrency_limit: int = Field(..., ge=1)
    queue: list[str] = Field(default_factory=list, description="Task refs not yet spawned.")
    worker_ids: list[str] = Field(default_factory=list)
    members: dict[str, BatchMember] = Field(default_factory=dict)
    status: BatchStatus = BatchStatus.RUNNING
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("task_refs")
    @classmethod
    def _check_task_refs(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("A batch needs at least one task ref")
        if len(set(value)) != len(value):
            raise ValueError("Task refs in a batch must be unique")
        return value

    @property
    def active_count(self) -> int:
        return sum(1 for member in self.members.values() if member.status.active)

    @property
    def complete(self) -> bool:
        return not self.queue and all(member.status.terminal for member in self.members.values())

    def member_for_worker(self, worker_id: str) -> BatchMember | None:
        return next(
            (member for member in self.members.values() if member.worker_id == worker_id), None
        )

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(slots=True)
class BatchReport:
    """Roll-up of a batch's member statuses."""

    batch: Batch
    running: int
    completed: int
    blocked: int
    queued: int
    cancelled: int
    total: int

    @property
    def complete(self) -> bool:
        return self.batch.complete

    @classmethod
    def from_batch(cls, batch: Batch) -> "BatchReport":
        counts = {"running": 0, "completed": 0, "blocked": 0, "queued": 0, "cancelled": 0}
        for member in batch.members.values():
            if member.status.active:
                counts["running"] += 1
            elif member.status in (MemberStatus.BLOCKED, MemberStatus.DEAD):
                counts["blocked"] += 1
            else:
                counts[member.status.value] += 1
        return cls(batch=batch, total=len(batch.members), **counts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch.id,
            "status": self.batch.status.value,
            "concurrency_limit": self.batch.concurrency_limit,
            "running": self.running,
            "completed": self.completed,
            "blocked": self.blocked,
            "queued": self.queued,
            "cancelled": self.cancelled,
            "total": self.total,
            "complete": self.complete,
            "queue": list(self.batch.queue),
            "worker_ids": list(self.batch.worker_ids),
            "members": {ref: member.model_dump(mode="json") for ref, member in self.batch.members.items()},
        }


__all__ = [
    "ACTIVE_MEMBER_STATUSES",
    "Batch",
    "BatchMember",
    "BatchReport",
    "BatchStatus",
    "MemberStatus",
    "TERMINAL_MEMBER_STATUSES",
]
