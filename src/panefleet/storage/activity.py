"""Chroma-backed activity log for approval audits and worker events."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from ..approve.models import AuditEntry
from ..events.models import Event

AUDIT_EVENT_TYPE = "approval_decision"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Minimal Chroma collection API used by the activity log."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ActivityRecord:
    id: str
    worker_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


class ActivityLog:
    """Append-only log of fleet activity stored in a Chroma collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "panefleet_activity",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install panefleet with the persistence extra"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert(self, result: dict[str, list[Any]]) -> list[ActivityRecord]:
        records: list[ActivityRecord] = []
        for record_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        ):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw) if isinstance(timestamp_raw, str) else self._clock()
            )
            records.append(
                ActivityRecord(
                    id=record_id,
                    worker_id=metadata.get("worker_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        records.sort(key=lambda record: (record.timestamp, record.metadata.get("sequence", 0)))
        return records

    def ping(self) -> bool:
        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        worker_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> ActivityRecord:
        collection = self._ensure_collection()
        counter = self._counters[worker_id] = self._counters[worker_id] + 1
        record_id = f"{worker_id}:{uuid.uuid4().hex}"
        timestamp = timestamp or self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata: dict[str, Any] = {
            "worker_id": worker_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(metadata)
        # Chroma only accepts scalar metadata values.
        record_metadata = {
            key: value
            for key, value in record_metadata.items()
            if isinstance(value, (str, int, float, bool))
        }

        collection.add(documents=[document], metadatas=[record_metadata], ids=[record_id])
        return ActivityRecord(
            id=record_id,
            worker_id=worker_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    async def record(self, entry: AuditEntry) -> None:
        self.record_event(
            worker_id=entry.worker_id,
            event_type=AUDIT_EVENT_TYPE,
            body=entry.model_dump(mode="json"),
            metadata={
                "action": entry.action.value,
                "rule_id": entry.rule_id,
                "tool_name": entry.tool_name,
                "pane_address": entry.pane_address,
            },
            timestamp=entry.timestamp,
        )

    async def record_worker_event(self, event: Event) -> None:
        self.record_event(
            worker_id=event.worker_id,
            event_type=event.kind.value,
            body=event.model_dump(mode="json"),
            metadata={"tool_name": event.tool_name},
            timestamp=event.timestamp,
        )

    def fetch_worker_activity(self, worker_id: str, *, limit: int | None = None) -> list[ActivityRecord]:
        collection = self._ensure_collection()
        return self._convert(collection.get(where={"worker_id": worker_id}, limit=limit))

    def audit_entries(self, *, worker_id: str | None = None, limit: int | None = None) -> list[AuditEntry]:
        records = self.search(filters={"event_type": AUDIT_EVENT_TYPE})
        entries = [
            AuditEntry.model_validate_json(record.document)
            for record in records
            if worker_id is None or record.worker_id == worker_id
        ]
        return entries[-limit:] if limit else entries

    def search(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ActivityRecord]:
        collection = self._ensure_collection()
        records = self._convert(collection.get(where=filters, limit=limit))
        if query:
            needle = query.lower()
            records = [
                record
                for record in records
                if needle in record.document.lower()
                or any(needle in str(value).lower() for value in record.metadata.values())
            ]
        return records[:limit] if limit else records


__all__ = ["AUDIT_EVENT_TYPE", "ActivityLog", "ActivityRecord", "ChromaUnavailableError"]
