"""Per-worker live state built from event streams, with a polling fallback."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from ..errors import DeadPane, FleetError, WorkerNotFound
from ..registry import WorkerRegistry, WorkerStatus
from ..registry.models import utcnow
from ..resolver import ResolvedVia, TargetResolver
from ..terminal import TerminalPrimitive
from .models import STATUS_BY_KIND, Event, EventKind, PendingPrompt, WorkerStateView
from .patterns import detect_approval_prompt
from .source import EventSource, EventStreamUnavailable

logger = logging.getLogger(__name__)

StatusListener = Callable[[str, WorkerStatus], Awaitable[None]]
EventObserver = Callable[[Event], Awaitable[None]]


@dataclass
class _Tracked:
    worker_id: str
    status: WorkerStatus
    last_event: Event | None = None
    last_seen_at: datetime | None = None
    degraded: bool = False
    pending_prompt: PendingPrompt | None = None
    event_count: int = 0
    task: asyncio.Task | None = None


class EventAggregator:
    """Maintains one state record per subscribed worker.

    Each subscription runs a background task that drains the worker's event
    stream every ``poll_interval`` seconds. When the stream cannot be read the
    task switches to degraded mode: liveness through the resolver and prompt
    detection through pane capture. Reads never wait on the stream.
    """

    def __init__(
        self,
        resolver: TargetResolver,
        terminal: TerminalPrimitive,
        *,
        source: EventSource | None = None,
        registry: WorkerRegistry | None = None,
        poll_interval: float = 2.0,
        capture_lines: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._resolver = resolver
        self._terminal = terminal
        self._source = source
        self._registry = registry
        self._poll_interval = poll_interval
        self._capture_lines = capture_lines
        self._clock = clock
        self._tracked: dict[str, _Tracked] = {}
        self._listeners: list[StatusListener] = []
        self._observers: list[EventObserver] = []

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def add_observer(self, observer: EventObserver) -> None:
        """Call ``observer`` with every event accepted for a subscribed worker."""

        self._observers.append(observer)

    @property
    def subscribed(self) -> list[str]:
        return sorted(self._tracked)

    # -- subscription lifecycle -------------------------------------------

    async def subscribe(self, worker_id: str, *, watch: bool = True) -> WorkerStateView:
        """Start tracking ``worker_id``; subscribing twice is a no-op."""

        if worker_id not in self._tracked:
            status = WorkerStatus.SPAWNING
            if self._registry is not None:
                worker = await self._registry.get(worker_id)
                status = worker.status
            tracked = _Tracked(worker_id=worker_id, status=status, degraded=self._source is None)
            self._tracked[worker_id] = tracked
            if watch:
                tracked.task = asyncio.create_task(
                    self._watch(worker_id), name=f"panefleet-events-{worker_id}"
                )
            logger.info("Subscribed to worker events", extra={"worker_id": worker_id, "watch": watch})
        return self.get_state(worker_id)

    async def unsubscribe(self, worker_id: str) -> bool:
        tracked = self._tracked.pop(worker_id, None)
        if tracked is None:
            return False
        await self._stop_task(tracked)
        logger.info("Unsubscribed from worker events", extra={"worker_id": worker_id})
        return True

    async def close(self) -> None:
        for worker_id in list(self._tracked):
            await self.unsubscribe(worker_id)

    @staticmethod
    async def _stop_task(tracked: _Tracked) -> None:
        task = tracked.task
        tracked.task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # -- reads ------------------------------------------------------------

    def _require(self, worker_id: str) -> _Tracked:
        tracked = self._tracked.get(worker_id)
        if tracked is None:
            raise WorkerNotFound(
                f"Worker '{worker_id}' is not subscribed.",
                target=worker_id,
                remediation=f"Subscribe first with: subscribe {worker_id}",
            )
        return tracked

    def get_state(self, worker_id: str) -> WorkerStateView:
        tracked = self._require(worker_id)
        elapsed = None
        if tracked.last_seen_at is not None:
            elapsed = max(0.0, (self._clock() - tracked.last_seen_at).total_seconds())
        return WorkerStateView(
            worker_id=tracked.worker_id,
            status=tracked.status,
            last_event=tracked.last_event,
            last_seen_at=tracked.last_seen_at,
            seconds_since_last_event=elapsed,
            degraded=tracked.degraded,
            pending_prompt=tracked.pending_prompt,
            event_count=tracked.event_count,
        )

    def states(self) -> list[WorkerStateView]:
        return [self.get_state(worker_id) for worker_id in self.subscribed]

    # -- updates ----------------------------------------------------------

    async def process_event(self, event: Event) -> None:
        tracked = self._tracked.get(event.worker_id)
        if tracked is None:
            logger.debug("Ignoring event for unsubscribed worker", extra={"worker_id": event.worker_id})
            return

        tracked.last_event = event
        tracked.last_seen_at = event.timestamp
        tracked.event_count += 1

        if event.kind == EventKind.APPROVAL_REQUEST:
            tracked.pending_prompt = PendingPrompt(
                detected_at=event.timestamp,
                source="event",
                tool_name=event.tool_name or event.payload.get("tool_name"),
                tool_input=dict(event.tool_input or event.payload.get("tool_input") or {}),
                text=event.payload.get("message"),
            )
        else:
            tracked.pending_prompt = None

        await self._set_status(tracked, STATUS_BY_KIND[event.kind])
        for observer in self._observers:
            await observer(event)

    async def clear_prompt(self, worker_id: str) -> None:
        """Drop the pending prompt after it has been answered."""

        tracked = self._tracked.get(worker_id)
        if tracked is None or tracked.pending_prompt is None:
            return
        tracked.pending_prompt = None
        if tracked.status == WorkerStatus.WAITING_APPROVAL:
            await self._set_status(tracked, WorkerStatus.RUNNING)

    async def mark_dead(self, worker_id: str) -> None:
        """Record that the worker's pane or registry record is gone."""

        tracked = self._tracked.get(worker_id)
        if tracked is None:
            return
        tracked.pending_prompt = None
        await self._set_status(tracked, WorkerStatus.DEAD)

    async def poll_once(self, worker_id: str) -> WorkerStateView:
        """Coarse state from liveness and captured output, without the event stream."""

        tracked = self._require(worker_id)
        try:
            if self._registry is not None and await self._registry.find(worker_id) is None:
                logger.info("Worker record is gone", extra={"worker_id": worker_id})
                await self.mark_dead(worker_id)
                return self.get_state(worker_id)
            resolved = await self._resolver.resolve(worker_id)
        except DeadPane as exc:
            logger.info("Worker pane is gone", extra={"worker_id": worker_id, "error": exc.message})
            await self.mark_dead(worker_id)
            return self.get_state(worker_id)
        except FleetError as exc:
            logger.warning("Degraded poll failed", extra={"worker_id": worker_id, "error": str(exc)})
            return self.get_state(worker_id)

        if resolved.resolved_via != ResolvedVia.WORKER_PRIMARY or resolved.worker_id != worker_id:
            # The record was pruned between the lookup and the resolve.
            logger.info("Worker record is gone", extra={"worker_id": worker_id})
            await self.mark_dead(worker_id)
            return self.get_state(worker_id)

        tracked.last_seen_at = self._clock()
        try:
            output = await self._terminal.capture_pane(resolved.pane_address, lines=self._capture_lines)
        except FleetError as exc:
            logger.warning("Pane capture failed", extra={"worker_id": worker_id, "error": str(exc)})
            return self.get_state(worker_id)

        prompt = detect_approval_prompt(output)
        if prompt is not None:
            if tracked.pending_prompt is None:
                tracked.pending_prompt = PendingPrompt(
                    detected_at=self._clock(),
                    source="capture",
                    tool_name=prompt.tool_name,
                    tool_input=dict(prompt.tool_input),
                    text=prompt.text,
                )
            await self._set_status(tracked, WorkerStatus.WAITING_APPROVAL)
        elif tracked.pending_prompt is not None and tracked.pending_prompt.source == "capture":
            tracked.pending_prompt = None
            await self._set_status(tracked, WorkerStatus.RUNNING)
        elif tracked.status == WorkerStatus.SPAWNING:
            await self._set_status(tracked, WorkerStatus.RUNNING)
        return self.get_state(worker_id)

    async def _set_status(self, tracked: _Tracked, status: WorkerStatus) -> None:
        if tracked.status == status:
            return
        previous = tracked.status
        tracked.status = status
        logger.debug(
            "Worker status changed",
            extra={"worker_id": tracked.worker_id, "from": previous.value, "to": status.value},
        )
        for listener in list(self._listeners):
            try:
                await listener(tracked.worker_id, status)
            except Exception:  # noqa: BLE001
                logger.exception("Status listener failed", extra={"worker_id": tracked.worker_id})

    # -- background task --------------------------------------------------

    async def _drain(self, tracked: _Tracked) -> None:
        if self._source is not None:
            try:
                events = await self._source.read_new(tracked.worker_id)
            except EventStreamUnavailable as exc:
                if not tracked.degraded:
                    logger.info(
                        "Event stream unavailable; polling instead",
                        extra={"worker_id": tracked.worker_id, "error": str(exc)},
                    )
                tracked.degraded = True
            else:
                tracked.degraded = False
                for event in events:
                    await self.process_event(event)
        if tracked.degraded:
            await self.poll_once(tracked.worker_id)

    async def _watch(self, worker_id: str) -> None:
        while True:
            tracked = self._tracked.get(worker_id)
            if tracked is None:
                return
            try:
                await self._drain(tracked)
            except Exception:  # noqa: BLE001
                logger.exception("Event watcher iteration failed", extra={"worker_id": worker_id})
            if tracked.status == WorkerStatus.DEAD:
                return
            await asyncio.sleep(self._poll_interval)


__all__ = ["EventAggregator", "EventObserver", "StatusListener"]
