"""Batch submission and concurrency management."""

from .manager import BatchManager, Killer, Spawner
from .models import Batch, BatchMember, BatchReport, BatchStatus, MemberStatus

__all__ = [
    "Batch",
    "BatchManager",
    "BatchMember",
    "BatchReport",
    "BatchStatus",
    "Killer",
    "MemberStatus",
    "Spawner",
]
