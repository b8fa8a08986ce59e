"""Worker registry and its backing stores."""

from .models import TERMINAL_STATUSES, Worker, WorkerStatus
from .store import JsonFileStore, MemoryStore, Store
from .workers import WorkerRegistry

__all__ = [
    "JsonFileStore",
    "MemoryStore",
    "Store",
    "TERMINAL_STATUSES",
    "Worker",
    "WorkerRegistry",
    "WorkerStatus",
]
