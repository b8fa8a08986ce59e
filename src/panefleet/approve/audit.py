"""Audit trail for approval decisions."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        ...


class JsonlAuditLog:
    """Appends one JSON line per decision."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def record(self, entry: AuditEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(entry.model_dump_json() + "\n")

    def entries(self, *, worker_id: str | None = None, limit: int | None = None) -> list[AuditEntry]:
        """Return recorded entries, oldest first; ``limit`` keeps the most recent."""

        if not self._path.exists():
            return []
        entries: list[AuditEntry] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entry = AuditEntry.model_validate_json(line)
            except ValidationError as exc:
                logger.warning("Skipping malformed audit line", extra={"path": str(self._path), "error": str(exc)})
                continue
            if worker_id is None or entry.worker_id == worker_id:
                entries.append(entry)
        return entries[-limit:] if limit else entries


__all__ = ["AuditSink", "JsonlAuditLog"]
