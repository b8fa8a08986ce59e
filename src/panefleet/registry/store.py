"""Key-value stores backing the worker and batch registries.

Stores never cache: every call goes back to the backing medium, so a write
made by one controller invocation is visible to the next read made by any
other. There is no write lock; concurrent writers follow last-write-wins.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from ..errors import RegistryUnavailable


class Store(Protocol):
    """Async flat key-value collection with whole-record upserts."""

    async def get(self, key: str) -> dict[str, Any] | None:
        ...

    async def list(self) -> dict[str, dict[str, Any]]:
        ...

    async def put(self, key: str, record: dict[str, Any]) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...


class JsonFileStore:
    """One collection persisted as a JSON document on disk.

    Layout: ``{"<collection>": {key: record, ...}, "last_updated": iso}``.
    A missing file reads as an empty collection; an unreadable or malformed
    file raises :class:`RegistryUnavailable`.
    """

    def __init__(self, path: Path, *, collection: str) -> None:
        self._path = Path(path)
        self._collection = collection

    @property
    def path(self) -> Path:
        return self._path

    def _unavailable(self, action: str, exc: Exception) -> RegistryUnavailable:
        return RegistryUnavailable(
            f"Cannot {action} {self._collection} store at {self._path}: {exc}",
            target=str(self._path),
            remediation=f"Check permissions on {self._path} or move the corrupt file aside.",
        )

    def _read(self) -> dict[str, dict[str, Any]]:
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise self._unavailable("read", exc) from exc

        if not content.strip():
            return {}
        try:
            document = json.loads(content)
        except json.JSONDecodeError as exc:
            raise self._unavailable("parse", exc) from exc

        records = document.get(self._collection, {}) if isinstance(document, dict) else None
        if not isinstance(records, dict):
            raise self._unavailable("parse", ValueError(f"'{self._collection}' is not an object"))
        return records

    def _write(self, records: dict[str, dict[str, Any]]) -> None:
        document = {
            self._collection: records,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        temp_path = self._path.with_name(f".{self._path.name}.{uuid4().hex[:8]}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(temp_path, self._path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise self._unavailable("write", exc) from exc

    async def get(self, key: str) -> dict[str, Any] | None:
        return self._read().get(key)

    async def list(self) -> dict[str, dict[str, Any]]:
        return self._read()

    async def put(self, key: str, record: dict[str, Any]) -> None:
        records = self._read()
        records[key] = record
        self._write(records)

    async def delete(self, key: str) -> bool:
        records = self._read()
        if key not in records:
            return False
        del records[key]
        self._write(records)
        return True


class MemoryStore:
    """Process-local store holding serialized copies of each record."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = self._records.get(key)
        return json.loads(raw) if raw is not None else None

    async def list(self) -> dict[str, dict[str, Any]]:
        return {key: json.loads(raw) for key, raw in self._records.items()}

    async def put(self, key: str, record: dict[str, Any]) -> None:
        self._records[key] = json.dumps(record)

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None


__all__ = ["JsonFileStore", "MemoryStore", "Store"]
