"""Caller-facing facade wiring the registry, resolver, batches, events and approvals."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Sequence

from .approve import AuditSink, AutoApproveEngine, Decision, JsonlAuditLog, PolicyLoader, TrustRule
from .batch import Batch, BatchManager, BatchReport, BatchStatus
from .config import FleetSettings
from .errors import FleetError, InvalidTarget
from .events import EventAggregator, EventSource, JsonlEventSource, WorkerStateView
from .registry import JsonFileStore, Store, Worker, WorkerRegistry, WorkerStatus
from .resolver import ResolvedTarget, TargetResolver
from .terminal import CommandResult, TerminalPrimitive, TmuxTerminal, is_pane_address

logger = logging.getLogger(__name__)


class Fleet:
    """One controller's view of its workers.

    Every command aimed at a worker goes through :meth:`resolve` first, so
    keystrokes only ever reach a pane confirmed live in the same call.
    """

    def __init__(
        self,
        settings: FleetSettings,
        terminal: TerminalPrimitive,
        *,
        worker_store: Store | None = None,
        batch_store: Store | None = None,
        event_source: EventSource | None = None,
        audit: AuditSink | None = None,
        policy_loader: PolicyLoader | None = None,
    ) -> None:
        self.settings = settings
        self.terminal = terminal
        self.registry = WorkerRegistry(
            worker_store or JsonFileStore(settings.resolved_registry_path(), collection="workers"),
            terminal=terminal,
        )
        self.resolver = TargetResolver(self.registry, terminal)
        self.batches = BatchManager(
            batch_store or JsonFileStore(settings.resolved_batches_path(), collection="batches"),
            self._spawn_for_batch,
            killer=self.kill_worker,
            registry=self.registry,
        )
        self.events = EventAggregator(
            self.resolver,
            terminal,
            source=event_source or JsonlEventSource(settings.resolved_events_dir()),
            registry=self.registry,
            poll_interval=settings.poll_interval,
        )
        self.events.add_listener(self._on_status_change)
        self.policy = policy_loader or PolicyLoader(settings.global_policy_path)
        self.audit = audit or JsonlAuditLog(settings.resolved_audit_path())
        self.approvals = AutoApproveEngine(
            self.events,
            self.resolver,
            terminal,
            self._rules_for,
            self.audit,
            approve_keys=settings.approve_keys,
        )
        self.approvals.start()

    @classmethod
    def from_settings(cls, settings: FleetSettings, terminal: TerminalPrimitive | None = None) -> "Fleet":
        """Build a fleet on tmux with the configured activity backend."""

        if terminal is None:
            terminal = TmuxTerminal(Path(settings.tmux_path) if settings.tmux_path else None)
        if settings.activity_backend == "chroma":
            from .storage import ActivityLog

            activity = ActivityLog(settings.chroma_persist_path)
            fleet = cls(settings, terminal, audit=activity)
            fleet.events.add_observer(activity.record_worker_event)
            return fleet
        return cls(settings, terminal)

    # -- resolution and registry ------------------------------------------

    async def resolve(self, target: str) -> ResolvedTarget:
        return await self.resolver.resolve(target)

    async def register_worker(
        self,
        worker_id: str,
        primary_pane: str,
        session_name: str,
        task_ref: str | None = None,
        **fields: Any,
    ) -> Worker:
        return await self.registry.register(worker_id, primary_pane, session_name, task_ref=task_ref, **fields)

    async def add_sub_pane(self, worker_id: str, pane: str) -> int:
        return await self.registry.add_sub_pane(worker_id, pane)

    async def list_workers(self, task_ref: str | None = None) -> list[Worker]:
        if task_ref is not None:
            return await self.registry.find_by_task(task_ref)
        return await self.registry.list()

    async def deregister(self, worker_id: str) -> bool:
        """Forget a worker without touching its panes."""

        await self.events.unsubscribe(worker_id)
        return await self.registry.remove(worker_id)

    # -- worker lifecycle -------------------------------------------------

    async def spawn_worker(
        self,
        task_ref: str | None = None,
        *,
        worker_id: str | None = None,
        session: str | None = None,
        window_name: str | None = None,
        command: str | None = None,
        cwd: str | None = None,
        role: str | None = None,
        task_file: str | None = None,
        metadata: dict[str, Any] | None = None,
        subscribe: bool = True,
    ) -> Worker:
        """Open a window running the worker command and register it."""

        if worker_id is None:
            if not task_ref:
                raise ValueError("spawn_worker needs a task_ref or an explicit worker_id")
            worker_id = await self.registry.generate_worker_id(task_ref)
        elif await self.registry.find(worker_id) is not None:
            raise InvalidTarget(
                f"Worker '{worker_id}' already exists.",
                target=worker_id,
                remediation=f"Pick another id or run: kill_worker {worker_id}",
            )

        session = session or self.settings.default_session
        window_name = window_name or worker_id
        command = command or self.settings.worker_command
        if await self.terminal.session_exists(session):
            info = await self.terminal.create_window(session, window_name, command=command, cwd=cwd)
        else:
            info = await self.terminal.create_session(session, window_name=window_name, command=command, cwd=cwd)

        worker_metadata = dict(metadata or {})
        if task_file:
            worker_metadata["task_file"] = task_file
        try:
            worker = await self.registry.register(
                worker_id,
                info.pane,
                info.session,
                task_ref=task_ref,
                status=WorkerStatus.RUNNING,
                window_name=info.window_name,
                repo_path=cwd or str(self.settings.repo_path),
                role=role,
                metadata=worker_metadata,
            )
        except FleetError:
            # Registration failed; do not leave an unreachable pane behind.
            await self.terminal.kill_pane(info.pane)
            raise

        logger.info(
            "Spawned worker",
            extra={"worker_id": worker_id, "pane": info.pane, "session": info.session, "task_ref": task_ref},
        )
        if subscribe:
            await self.events.subscribe(worker_id)
        return worker

    async def split_worker(
        self, worker_id: str, *, vertical: bool = False, command: str | None = None
    ) -> tuple[int, str]:
        """Split the worker's primary pane; returns the new sub-pane index and address."""

        resolved = await self.resolve(worker_id)
        pane = await self.terminal.split_pane(resolved.pane_address, vertical=vertical, command=command)
        index = await self.registry.add_sub_pane(worker_id, pane)
        logger.info("Split worker pane", extra={"worker_id": worker_id, "pane": pane, "index": index})
        return index, pane

    async def kill_worker(self, worker_id: str) -> list[str]:
        """Kill every pane of the worker, then deregister it.

        If any kill fails the record stays in place so the call can be retried.
        """

        worker = await self.registry.get(worker_id)
        killed: list[str] = []
        for pane in reversed(worker.panes):
            if not await self.terminal.is_pane_live(pane):
                continue
            await self.terminal.kill_pane(pane)
            killed.append(pane)
        await self.deregister(worker_id)
        logger.info("Killed worker", extra={"worker_id": worker_id, "panes": killed})
        return killed

    # -- commands ---------------------------------------------------------

    async def _resolve_for_keys(self, target: str) -> ResolvedTarget:
        resolved = await self.resolve(target)
        if not is_pane_address(resolved.pane_address):
            raise InvalidTarget(
                f"Resolved address '{resolved.pane_address}' for '{target}' is not a pane address.",
                target=target,
                remediation="Check with: tmux list-panes -a",
            )
        return resolved

    async def send(self, target: str, text: str, *, enter: bool = True) -> ResolvedTarget:
        resolved = await self._resolve_for_keys(target)
        await self.terminal.send_text(resolved.pane_address, text, enter=enter)
        return resolved

    async def read(self, target: str, *, lines: int | None = None) -> str:
        resolved = await self.resolve(target)
        return await self.terminal.capture_pane(resolved.pane_address, lines=lines)

    async def exec(self, target: str, command: str, *, timeout: float | None = None) -> CommandResult:
        """Run ``command`` in the target pane; a timeout is reported, never retried."""

        resolved = await self._resolve_for_keys(target)
        result = await self.terminal.run_command(
            resolved.pane_address, command, timeout=timeout or self.settings.exec_timeout
        )
        if result.timed_out:
            logger.warning(
                "Command timed out",
                extra={"target": target, "pane": resolved.pane_address, "command": command},
            )
        return result

    # -- batches ----------------------------------------------------------

    async def _spawn_for_batch(self, batch_id: str, task_ref: str) -> str:
        worker = await self.spawn_worker(task_ref, metadata={"batch_id": batch_id})
        return worker.id

    async def submit_batch(self, task_refs: Sequence[str], concurrency_limit: int | None = None) -> str:
        return await self.batches.submit(task_refs, concurrency_limit or self.settings.default_concurrency)

    async def submit_pattern(
        self, pattern: str, ready_tasks: Iterable[str], concurrency_limit: int | None = None
    ) -> str:
        return await self.batches.submit_pattern(
            pattern, ready_tasks, concurrency_limit or self.settings.default_concurrency
        )

    async def batch_status(self, batch_id: str) -> BatchReport:
        return await self.batches.refresh(batch_id)

    async def cancel_batch(self, batch_id: str, *, hard: bool = False) -> BatchReport:
        return await self.batches.cancel(batch_id, hard=hard)

    async def list_batches(self) -> list[Batch]:
        return await self.batches.list()

    # -- events and approvals ---------------------------------------------

    async def subscribe(self, worker_id: str) -> WorkerStateView:
        return await self.events.subscribe(worker_id)

    async def unsubscribe(self, worker_id: str) -> bool:
        return await self.events.unsubscribe(worker_id)

    def worker_state(self, worker_id: str) -> WorkerStateView:
        return self.events.get_state(worker_id)

    async def evaluate_approval(self, worker_id: str) -> Decision:
        return await self.approvals.evaluate(worker_id)

    async def _rules_for(self, worker_id: str) -> list[TrustRule]:
        worker = await self.registry.find(worker_id)
        repo_path = self.settings.repo_path
        task_file: Path | None = None
        if worker is not None:
            if worker.repo_path:
                repo_path = Path(worker.repo_path)
            if worker.metadata.get("task_file"):
                task_file = Path(worker.metadata["task_file"])
        return self.policy.load(repo_path, task_file=task_file)

    async def _on_status_change(self, worker_id: str, status: WorkerStatus) -> None:
        if status != WorkerStatus.DEAD:
            await self.registry.update_status(worker_id, status)
        await self.batches.notify(worker_id, status)

    # -- housekeeping -----------------------------------------------------

    async def summary(self) -> dict[str, Any]:
        workers = await self.registry.list()
        batches = await self.batches.list()
        status_counts: dict[str, int] = {}
        for worker in workers:
            status_counts[worker.status.value] = status_counts.get(worker.status.value, 0) + 1
        return {
            "workers": {"count": len(workers), "status_counts": status_counts},
            "batches": {
                "count": len(batches),
                "open": [batch.id for batch in batches if batch.status == BatchStatus.RUNNING],
            },
            "subscriptions": [state.to_dict() for state in self.events.states()],
            "approvals": {"running": self.approvals.running, **self.approvals.stats()},
        }

    async def close(self) -> None:
        self.approvals.stop()
        await self.events.close()


__all__ = ["Fleet"]
