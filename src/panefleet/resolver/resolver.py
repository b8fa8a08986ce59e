"""Turn caller-supplied targets into validated, live pane addresses."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from ..errors import (
    LIST_SESSIONS_HINT,
    LIST_WORKERS_HINT,
    DeadPane,
    DeadWorker,
    FleetError,
    InvalidTarget,
    UnknownTarget,
)
from ..registry import Worker, WorkerRegistry
from ..terminal import TerminalPrimitive
from .parse import (
    RawAddress,
    SessionRef,
    SessionWindowRef,
    TargetRef,
    WorkerRef,
    WorkerSubRef,
    parse_target,
)

logger = logging.getLogger(__name__)


class ResolvedVia(str, Enum):
    RAW = "raw"
    WORKER_PRIMARY = "worker-primary"
    WORKER_SUBPANE = "worker-subpane"
    SESSION_WINDOW = "session-window"
    SESSION = "session"


@dataclass(slots=True)
class ResolvedTarget:
    """A pane address confirmed live in the call that produced it."""

    pane_address: str
    session_name: str
    resolved_via: ResolvedVia
    worker_id: str | None = None
    sub_pane_index: int | None = None
    confirmed_live: bool = field(default=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "pane_address": self.pane_address,
            "session_name": self.session_name,
            "worker_id": self.worker_id,
            "sub_pane_index": self.sub_pane_index,
            "resolved_via": self.resolved_via.value,
            "confirmed_live": self.confirmed_live,
        }


def _kill_hint(worker_id: str) -> str:
    return f"This worker's pane is gone; deregister it with: deregister {worker_id}"


class TargetResolver:
    """Resolve targets through five ordered tiers.

    Dead panes found along the way are pruned from the registry before the
    failure is raised, so the next caller does not trip over the same entry.
    """

    def __init__(self, registry: WorkerRegistry, terminal: TerminalPrimitive) -> None:
        self._registry = registry
        self._terminal = terminal

    async def resolve(self, target: str) -> ResolvedTarget:
        workers = {worker.id: worker for worker in await self._registry.list()}
        ref = parse_target(target, workers)
        logger.debug("Resolving target", extra={"target": target, "tier": type(ref).__name__})

        try:
            resolved = await self._resolve_ref(target, ref, workers)
        except FleetError as exc:
            logger.debug(
                "Target resolution failed",
                extra={"target": target, "tier": type(ref).__name__, "kind": exc.kind},
            )
            raise

        logger.debug(
            "Target resolved",
            extra={
                "target": target,
                "pane": resolved.pane_address,
                "resolved_via": resolved.resolved_via.value,
            },
        )
        return resolved

    async def _resolve_ref(self, target: str, ref: TargetRef, workers: dict[str, Worker]) -> ResolvedTarget:
        if isinstance(ref, RawAddress):
            return await self._resolve_raw(ref)
        if isinstance(ref, WorkerSubRef):
            return await self._resolve_sub_pane(target, ref, workers[ref.worker_id])
        if isinstance(ref, WorkerRef):
            return await self._resolve_worker(workers[ref.worker_id])
        if isinstance(ref, SessionWindowRef):
            return await self._resolve_session(target, ref.session, ref.window)
        return await self._resolve_session(target, ref.session, None)

    async def _resolve_raw(self, ref: RawAddress) -> ResolvedTarget:
        if not await self._terminal.is_pane_live(ref.pane):
            raise DeadPane(
                f"Pane {ref.pane} is dead or does not exist.",
                target=ref.pane,
                remediation="Check with: tmux list-panes -a",
            )
        session = await self._terminal.pane_session(ref.pane)
        return ResolvedTarget(
            pane_address=ref.pane,
            session_name=session or "",
            resolved_via=ResolvedVia.RAW,
        )

    async def _resolve_sub_pane(self, target: str, ref: WorkerSubRef, worker: Worker) -> ResolvedTarget:
        try:
            index = int(ref.index_text)
        except ValueError:
            index = -1
        if index < 0:
            raise InvalidTarget(
                f'Invalid sub-pane index "{ref.index_text}" for worker "{worker.id}".',
                target=target,
                remediation="Use a non-negative integer (0 = primary, 1+ = sub-panes).",
            )

        if index == 0:
            resolved = await self._resolve_worker(worker)
            resolved.resolved_via = ResolvedVia.WORKER_SUBPANE
            resolved.sub_pane_index = 0
            return resolved

        pane = worker.pane_at(index)
        if pane is None:
            available = "0 (primary)"
            if worker.sub_panes:
                available += f", 1-{len(worker.sub_panes)} (sub-panes)"
            raise UnknownTarget(
                f'Worker "{worker.id}" has no sub-pane index {index}. Available: {available}.',
                target=target,
                remediation=f"Split first with: split_worker {worker.id}",
            )

        if not await self._terminal.is_pane_live(pane):
            await self._prune(self._registry.remove_sub_pane(worker.id, pane), worker.id)
            raise DeadPane(
                f"Worker {worker.id}: sub-pane {index} ({pane}) is dead and was removed.",
                target=target,
                remediation=f"Split a new pane with: split_worker {worker.id}",
            )

        return ResolvedTarget(
            pane_address=pane,
            session_name=worker.session_name,
            resolved_via=ResolvedVia.WORKER_SUBPANE,
            worker_id=worker.id,
            sub_pane_index=index,
        )

    async def _resolve_worker(self, worker: Worker) -> ResolvedTarget:
        if not await self._terminal.is_pane_live(worker.primary_pane):
            await self._prune(self._registry.remove(worker.id), worker.id)
            raise DeadWorker(
                f"Worker {worker.id}: pane {worker.primary_pane} is dead; the registry entry was removed.",
                target=worker.id,
                remediation=_kill_hint(worker.id),
            )
        return ResolvedTarget(
            pane_address=worker.primary_pane,
            session_name=worker.session_name,
            resolved_via=ResolvedVia.WORKER_PRIMARY,
            worker_id=worker.id,
        )

    async def _resolve_session(self, target: str, session: str, window: str | None) -> ResolvedTarget:
        pane = await self._terminal.find_pane(session, window)
        if pane is None:
            if window is None:
                message = f'Target "{target}" not found. Not a worker, session, or pane address.'
            else:
                message = (
                    f'Target "{target}" not found. No worker "{session}" in registry and no '
                    f'session:window "{session}:{window}".'
                )
            raise UnknownTarget(
                message,
                target=target,
                remediation=f"{LIST_WORKERS_HINT} {LIST_SESSIONS_HINT}",
            )

        if not await self._terminal.is_pane_live(pane):
            raise DeadPane(
                f'Target "{target}": pane {pane} is dead.',
                target=target,
                remediation=LIST_SESSIONS_HINT,
            )

        return ResolvedTarget(
            pane_address=pane,
            session_name=session,
            resolved_via=ResolvedVia.SESSION if window is None else ResolvedVia.SESSION_WINDOW,
        )

    async def _prune(self, operation, worker_id: str) -> None:
        # The caller raises the dead-pane error regardless; a failed prune only delays cleanup.
        try:
            await operation
        except FleetError as exc:
            logger.warning(
                "Failed to prune dead pane from registry",
                extra={"worker_id": worker_id, "error": str(exc)},
            )


def format_resolved_label(resolved: ResolvedTarget, original_target: str) -> str:
    """Human-readable label, e.g. ``bd-42:1 (pane %22, session genie)``."""

    if resolved.worker_id:
        label = resolved.worker_id
        if resolved.sub_pane_index:
            label = f"{label}:{resolved.sub_pane_index}"
    else:
        label = original_target
    details = [f"pane {resolved.pane_address}"]
    if resolved.session_name:
        details.append(f"session {resolved.session_name}")
    return f"{label} ({', '.join(details)})"


__all__ = ["ResolvedTarget", "ResolvedVia", "TargetResolver", "format_resolved_label"]
