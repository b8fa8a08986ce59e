"""Spawn groups of workers under a concurrency ceiling."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
from typing import Awaitable, Callable, Iterable, Sequence

from pydantic import ValidationError

from ..errors import BatchNotFound, ConcurrencyLimitExceeded, FleetError, RegistryUnavailable
from ..registry import Store, WorkerRegistry, WorkerStatus
from ..registry.models import utcnow
from .models import Batch, BatchMember, BatchReport, BatchStatus, MemberStatus

logger = logging.getLogger(__name__)

Spawner = Callable[[str, str], Awaitable[str]]
"""``(batch_id, task_ref) -> worker_id``; raising marks the member blocked."""

Killer = Callable[[str], Awaitable[object]]

BATCH_ID_PATTERN = re.compile(r"^batch-(\d+)$")


class BatchManager:
    """Owns batch records and decides when queued task refs get spawned.

    Members are persisted as ``spawning`` before the spawner is awaited and
    fills are serialized by a lock, so the number of active members never
    exceeds the batch's ceiling, even while a spawn is in flight.
    """

    def __init__(
        self,
        store: Store,
        spawner: Spawner,
        *,
        killer: Killer | None = None,
        registry: WorkerRegistry | None = None,
    ) -> None:
        self._store = store
        self._spawner = spawner
        self._killer = killer
        self._registry = registry
        self._lock = asyncio.Lock()

    # -- persistence -------------------------------------------------------

    def _decode(self, key: str, record: dict) -> Batch:
        try:
            return Batch.model_validate(record)
        except ValidationError as exc:
            raise RegistryUnavailable(
                f"Batch record '{key}' is malformed: {exc}",
                target=key,
                remediation="Remove the record from the batch store and resubmit.",
            ) from exc

    async def _load(self, batch_id: str) -> Batch:
        record = await self._store.get(batch_id)
        if record is None:
            raise BatchNotFound(
                f"Batch '{batch_id}' not found.",
                target=batch_id,
                remediation="Run the list_batches operation to see known batches.",
            )
        return self._decode(batch_id, record)

    async def _save(self, batch: Batch) -> None:
        await self._store.put(batch.id, batch.to_record())

    async def _next_batch_id(self) -> str:
        highest = 0
        for key in (await self._store.list()).keys():
            match = BATCH_ID_PATTERN.match(key)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"batch-{highest + 1:03d}"

    # -- public API --------------------------------------------------------

    async def list(self) -> list[Batch]:
        records = await self._store.list()
        return [self._decode(key, record) for key, record in sorted(records.items())]

    async def submit(self, task_refs: Sequence[str], concurrency_limit: int) -> str:
        """Create a batch and spawn up to ``concurrency_limit`` members immediately."""

        refs = [ref.strip() for ref in task_refs if ref and ref.strip()]
        if not refs:
            raise ValueError("submit requires at least one task ref")
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")

        async with self._lock:
            batch = Batch(
                id=await self._next_batch_id(),
                task_refs=refs,
                concurrency_limit=concurrency_limit,
                queue=list(refs),
                members={ref: BatchMember(task_ref=ref) for ref in refs},
            )
            await self._save(batch)
        logger.info(
            "Submitted batch",
            extra={"batch_id": batch.id, "tasks": len(refs), "concurrency_limit": concurrency_limit},
        )
        await self._fill(batch.id)
        return batch.id

    async def submit_pattern(
        self, pattern: str, ready_tasks: Iterable[str], concurrency_limit: int
    ) -> str:
        """Submit every ready task ref matching a ``*``/``?`` glob."""

        matches = [ref for ref in ready_tasks if fnmatch.fnmatchcase(ref, pattern)]
        if not matches:
            raise ValueError(f"No ready tasks match pattern '{pattern}'")
        return await self.submit(matches, concurrency_limit)

    async def status(self, batch_id: str) -> BatchReport:
        return BatchReport.from_batch(await self._load(batch_id))

    async def cancel(self, batch_id: str, *, hard: bool = False) -> BatchReport:
        """Stop spawning queued members; with ``hard`` also kill active ones."""

        if hard and self._killer is None:
            raise ValueError("Hard cancel requires a kill operation")

        async with self._lock:
            batch = await self._load(batch_id)
            now = utcnow()
            for ref in batch.queue:
                member = batch.members[ref]
                member.status = MemberStatus.CANCELLED
                member.completed_at = now
            batch.queue = []
            batch.status = BatchStatus.CANCELLED
            await self._save(batch)

            if hard:
                for member in batch.members.values():
                    if not member.status.active or member.worker_id is None:
                        continue
                    try:
                        await self._killer(member.worker_id)
                    except FleetError as exc:
                        logger.warning(
                            "Failed to kill batch member",
                            extra={"batch_id": batch_id, "worker_id": member.worker_id, "error": str(exc)},
                        )
                        continue
                    member.status = MemberStatus.CANCELLED
                    member.completed_at = utcnow()
                await self._save(batch)

        logger.info("Cancelled batch", extra={"batch_id": batch_id, "hard": hard})
        return BatchReport.from_batch(batch)

    async def notify(self, worker_id: str, status: WorkerStatus | str) -> list[str]:
        """Record a worker status change and refill any batch it belongs to.

        Returns the ids of the batches that contained the worker.
        """

        member_status = MemberStatus.from_worker(status)
        touched: list[str] = []
        async with self._lock:
            for batch in await self.list():
                member = batch.member_for_worker(worker_id)
                if member is None or member.status == member_status:
                    continue
                if member.status.terminal:
                    continue
                self._apply(member, member_status)
                self._roll_up(batch)
                await self._save(batch)
                touched.append(batch.id)
        for batch_id in touched:
            await self._fill(batch_id)
        return touched

    async def refresh(self, batch_id: str) -> BatchReport:
        """Pull member statuses from the worker registry; a missing worker counts as dead."""

        if self._registry is None:
            raise ValueError("refresh requires a worker registry")
        async with self._lock:
            batch = await self._load(batch_id)
            changed = False
            for member in batch.members.values():
                if member.worker_id is None or member.status.terminal:
                    continue
                worker = await self._registry.find(member.worker_id)
                observed = MemberStatus.DEAD if worker is None else MemberStatus.from_worker(worker.status)
                if observed != member.status and observed != MemberStatus.SPAWNING:
                    self._apply(member, observed)
                    changed = True
            if changed:
                self._roll_up(batch)
                await self._save(batch)
        await self._fill(batch_id)
        return await self.status(batch_id)

    # -- internals ---------------------------------------------------------

    @staticmethod
    def _apply(member: BatchMember, status: MemberStatus) -> None:
        member.status = status
        if status.terminal:
            member.completed_at = utcnow()

    @staticmethod
    def _roll_up(batch: Batch) -> None:
        if batch.status == BatchStatus.CANCELLED or not batch.complete:
            return
        failed = any(
            member.status in (MemberStatus.BLOCKED, MemberStatus.DEAD) for member in batch.members.values()
        )
        batch.status = BatchStatus.PARTIALLY_BLOCKED if failed else BatchStatus.COMPLETED

    def _check_ceiling(self, batch: Batch) -> None:
        if batch.active_count > batch.concurrency_limit:
            raise ConcurrencyLimitExceeded(
                f"Batch {batch.id} has {batch.active_count} active members but a limit of "
                f"{batch.concurrency_limit}.",
                target=batch.id,
                remediation=f"Inspect with: batch_status {batch.id}",
            )

    async def _fill(self, batch_id: str) -> None:
        """Spawn queued members while free slots remain."""

        async with self._lock:
            batch = await self._load(batch_id)
            self._check_ceiling(batch)
            while batch.status == BatchStatus.RUNNING and batch.queue:
                if batch.active_count >= batch.concurrency_limit:
                    break
                ref = batch.queue.pop(0)
                member = batch.members[ref]
                member.status = MemberStatus.SPAWNING
                member.started_at = utcnow()
                await self._save(batch)

                try:
                    worker_id = await self._spawner(batch.id, ref)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "Failed to spawn batch member",
                        extra={"batch_id": batch.id, "task_ref": ref, "error": str(exc)},
                    )
                    member.error = str(exc)
                    self._apply(member, MemberStatus.BLOCKED)
                else:
                    member.worker_id = worker_id
                    member.status = MemberStatus.RUNNING
                    if worker_id not in batch.worker_ids:
                        batch.worker_ids.append(worker_id)
                    logger.info(
                        "Spawned batch member",
                        extra={"batch_id": batch.id, "task_ref": ref, "worker_id": worker_id},
                    )
                self._check_ceiling(batch)
                await self._save(batch)

            self._roll_up(batch)
            await self._save(batch)


__all__ = ["BatchManager", "Killer", "Spawner"]
