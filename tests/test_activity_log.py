from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from panefleet.approve import ApprovalAction, AuditEntry
from panefleet.events import Event
from panefleet.storage import AUDIT_EVENT_TYPE, ActivityLog, ChromaUnavailableError


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


BASE = datetime.fromisoformat("2026-01-01T00:00:00+00:00")


def _log(tmp_path: Path) -> tuple[ActivityLog, StubClient]:
    client = StubClient()
    log = ActivityLog(tmp_path, client_factory=lambda: client, clock=lambda: BASE)
    return log, client


def test_record_event_keeps_scalar_metadata(tmp_path: Path) -> None:
    log, client = _log(tmp_path)

    record = log.record_event(
        worker_id="bd-42",
        event_type="note",
        body={"text": "hello"},
        metadata={"pane": "%3", "panes": ["%3", "%4"], "missing": None},
    )

    assert record.document == '{"text": "hello"}'
    assert record.metadata["pane"] == "%3"
    assert "panes" not in record.metadata
    assert "missing" not in record.metadata
    assert record.metadata["sequence"] == 1
    stored = client.collections["panefleet_activity"].records
    assert [item.id for item in stored] == [record.id]


def test_audit_entries_round_trip_by_worker(tmp_path: Path) -> None:
    log, _ = _log(tmp_path)

    async def scenario() -> None:
        for offset, (worker_id, action) in enumerate((("a", "allow"), ("b", "deny"), ("a", "ask"))):
            await log.record(
                AuditEntry(
                    worker_id=worker_id,
                    action=action,
                    reason="test",
                    timestamp=BASE + timedelta(seconds=offset),
                )
            )
        await log.record_worker_event(Event(worker_id="a", kind="completion", timestamp=BASE))

    asyncio.run(scenario())

    entries = log.audit_entries()
    assert [entry.action for entry in entries] == [ApprovalAction.ALLOW, ApprovalAction.DENY, ApprovalAction.ASK]
    assert [entry.action for entry in log.audit_entries(worker_id="a")] == [ApprovalAction.ALLOW, ApprovalAction.ASK]
    assert [entry.action for entry in log.audit_entries(limit=1)] == [ApprovalAction.ASK]

    activity = log.fetch_worker_activity("a")
    assert {record.event_type for record in activity} == {AUDIT_EVENT_TYPE, "completion"}


def test_search_matches_documents_and_metadata(tmp_path: Path) -> None:
    log, _ = _log(tmp_path)
    log.record_event(worker_id="bd-1", event_type="note", body="deploy started")
    log.record_event(worker_id="bd-2", event_type="note", body="tests", metadata={"stage": "Deploy"})
    log.record_event(worker_id="bd-3", event_type="note", body="idle")

    assert {record.worker_id for record in log.search("deploy")} == {"bd-1", "bd-2"}
    assert [record.worker_id for record in log.search(filters={"worker_id": "bd-3"})] == ["bd-3"]
    assert len(log.search(limit=2)) == 2
    assert log.ping()


def test_missing_chroma_raises_unavailable(tmp_path: Path) -> None:
    def factory():
        raise ChromaUnavailableError("chromadb package is not installed")

    log = ActivityLog(tmp_path, client_factory=factory)
    with pytest.raises(ChromaUnavailableError):
        log.ping()
