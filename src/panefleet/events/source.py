"""Per-worker event streams."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .models import Event

logger = logging.getLogger(__name__)


class EventStreamUnavailable(RuntimeError):
    """The worker's event stream cannot be read right now."""


class EventSource(Protocol):
    async def read_new(self, worker_id: str) -> list[Event]:
        """Return events appended since the previous call; raise EventStreamUnavailable if unreadable."""
        ...


class JsonlEventSource:
    """Tails ``<directory>/<worker_id>.jsonl`` files written by worker hooks.

    Each line is one JSON event. Lines without a ``worker_id`` are attributed
    to the file's worker. A trailing line without a newline is left for the
    next read, since the writer may still be appending to it.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._offsets: dict[str, int] = {}

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, worker_id: str) -> Path:
        return self._directory / f"{worker_id}.jsonl"

    async def read_new(self, worker_id: str) -> list[Event]:
        path = self.path_for(worker_id)
        offset = self._offsets.get(worker_id, 0)
        try:
            with path.open("rb") as handle:
                handle.seek(0, 2)
                size = handle.tell()
                if size < offset:
                    # File was truncated or replaced; start over.
                    offset = 0
                handle.seek(offset)
                chunk = handle.read()
        except OSError as exc:
            raise EventStreamUnavailable(f"{path}: {exc}") from exc

        complete, _, _ = chunk.rpartition(b"\n")
        if not complete and not chunk.endswith(b"\n"):
            self._offsets[worker_id] = offset
            return []
        self._offsets[worker_id] = offset + len(complete) + 1

        events: list[Event] = []
        for raw_line in complete.decode("utf-8", errors="replace").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                if isinstance(data, dict):
                    data.setdefault("worker_id", worker_id)
                events.append(Event.model_validate(data))
            except (json.JSONDecodeError, ValidationError) as exc:
                logger.warning(
                    "Skipping malformed event line",
                    extra={"worker_id": worker_id, "path": str(path), "error": str(exc)},
                )
        return events

    async def append(self, event: Event) -> None:
        """Append an event to its worker's stream."""

        path = self.path_for(event.worker_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(event.model_dump_json() + "\n")

    def forget(self, worker_id: str) -> None:
        self._offsets.pop(worker_id, None)


__all__ = ["EventSource", "EventStreamUnavailable", "JsonlEventSource"]
