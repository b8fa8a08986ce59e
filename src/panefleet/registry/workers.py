"""Worker registry: the single owner of Worker records."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from ..errors import LIST_WORKERS_HINT, DeadPane, InvalidTarget, RegistryUnavailable, WorkerNotFound
from ..terminal import TerminalPrimitive
from .models import Worker, WorkerStatus, utcnow
from .store import Store

logger = logging.getLogger(__name__)


class WorkerRegistry:
    """Durable mapping from worker id to panes and metadata.

    Every read goes to the store; nothing is cached between calls. When a
    terminal is attached, pane addresses are confirmed live before they are
    written.
    """

    def __init__(self, store: Store, *, terminal: TerminalPrimitive | None = None) -> None:
        self._store = store
        self._terminal = terminal

    def _decode(self, key: str, record: dict[str, Any]) -> Worker:
        try:
            return Worker.model_validate(record)
        except ValidationError as exc:
            raise RegistryUnavailable(
                f"Worker record '{key}' is malformed: {exc}",
                target=key,
                remediation=f"Deregister '{key}' and spawn it again.",
            ) from exc

    async def _confirm_live(self, worker_id: str, pane: str) -> None:
        if self._terminal is None:
            return
        if not await self._terminal.is_pane_live(pane):
            raise DeadPane(
                f"Refusing to record pane {pane} for worker '{worker_id}': pane is not live.",
                target=pane,
                remediation="Run 'tmux list-panes -a' to find a live pane.",
            )

    async def find(self, worker_id: str) -> Worker | None:
        record = await self._store.get(worker_id)
        return self._decode(worker_id, record) if record is not None else None

    async def get(self, worker_id: str) -> Worker:
        worker = await self.find(worker_id)
        if worker is None:
            raise WorkerNotFound(
                f"Worker '{worker_id}' not found.",
                target=worker_id,
                remediation=LIST_WORKERS_HINT,
            )
        return worker

    async def list(self) -> list[Worker]:
        records = await self._store.list()
        return [self._decode(key, record) for key, record in records.items()]

    async def ids(self) -> set[str]:
        return set((await self._store.list()).keys())

    async def put(self, worker: Worker) -> None:
        """Whole-record upsert."""

        await self._store.put(worker.id, worker.to_record())

    async def register(
        self,
        worker_id: str,
        primary_pane: str,
        session_name: str,
        *,
        task_ref: str | None = None,
        status: WorkerStatus | None = None,
        **fields: Any,
    ) -> Worker:
        """Register or refresh a worker.

        Re-registering the same id with the same pane refreshes ``last_seen_at``
        and metadata without duplicating anything; a different primary pane
        replaces it and drops sub-panes split from the old one.
        """

        await self._confirm_live(worker_id, primary_pane)
        now = utcnow()
        existing = await self.find(worker_id)
        if existing is not None and existing.primary_pane == primary_pane:
            update: dict[str, Any] = {"session_name": session_name, "last_seen_at": now, **fields}
            if task_ref is not None:
                update["task_ref"] = task_ref
            if status is not None:
                update["status"] = status
            worker = existing.model_copy(update=update)
        else:
            worker = Worker(
                id=worker_id,
                primary_pane=primary_pane,
                session_name=session_name,
                task_ref=task_ref,
                status=status or WorkerStatus.SPAWNING,
                created_at=existing.created_at if existing else now,
                last_seen_at=now,
                **fields,
            )
        worker = Worker.model_validate(worker.model_dump())
        await self.put(worker)
        logger.debug(
            "Registered worker",
            extra={"worker_id": worker.id, "pane": primary_pane, "session": session_name},
        )
        return worker

    async def add_sub_pane(self, worker_id: str, pane: str) -> int:
        """Append a sub-pane and return its 1-based logical index."""

        worker = await self.get(worker_id)
        if pane == worker.primary_pane:
            raise InvalidTarget(
                f"Pane {pane} is already the primary pane of worker '{worker_id}'.",
                target=pane,
                remediation=f"Address it as {worker_id} or {worker_id}:0; attach a different pane as a sub-pane.",
            )
        if pane in worker.sub_panes:
            return worker.sub_panes.index(pane) + 1
        await self._confirm_live(worker_id, pane)
        worker.sub_panes.append(pane)
        worker.last_seen_at = utcnow()
        await self.put(worker)
        return len(worker.sub_panes)

    async def remove_sub_pane(self, worker_id: str, pane: str) -> bool:
        worker = await self.find(worker_id)
        if worker is None or pane not in worker.sub_panes:
            return False
        worker.sub_panes.remove(pane)
        await self.put(worker)
        return True

    async def remove(self, worker_id: str) -> bool:
        removed = await self._store.delete(worker_id)
        if removed:
            logger.info("Removed worker", extra={"worker_id": worker_id})
        return removed

    async def update_status(self, worker_id: str, status: WorkerStatus) -> Worker | None:
        worker = await self.find(worker_id)
        if worker is None:
            return None
        if worker.status != status:
            worker.status = status
            worker.last_seen_at = utcnow()
            await self.put(worker)
        return worker

    async def find_by_pane(self, pane: str) -> Worker | None:
        for worker in await self.list():
            if pane in worker.panes:
                return worker
        return None

    async def find_by_task(self, task_ref: str) -> list[Worker]:
        return [worker for worker in await self.list() if worker.task_ref == task_ref]

    async def generate_worker_id(self, task_ref: str) -> str:
        """Return ``task_ref`` for the first worker of a task, then ``task_ref-2``, ``-3``..."""

        existing = await self.ids()
        if task_ref not in existing:
            return task_ref
        suffix = 2
        while f"{task_ref}-{suffix}" in existing:
            suffix += 1
        return f"{task_ref}-{suffix}"


__all__ = ["WorkerRegistry"]
