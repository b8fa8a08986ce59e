"""Tool registration for the panefleet MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..fleet import Fleet
from ..registry import Worker
from ..resolver import format_resolved_label

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    resolve: Any
    register_worker: Any
    add_sub_pane: Any
    list_workers: Any
    deregister: Any
    spawn_worker: Any
    split_worker: Any
    kill_worker: Any
    send: Any
    read: Any
    exec: Any
    submit_batch: Any
    submit_pattern: Any
    batch_status: Any
    cancel_batch: Any
    list_batches: Any
    subscribe: Any
    unsubscribe: Any
    worker_state: Any
    evaluate_approval: Any


def _worker_summary(worker: Worker) -> dict[str, Any]:
    return worker.to_record()


def register_tools(server: FastMCP, fleet: Fleet) -> ToolHandles:
    """Register panefleet's MCP tools on the server."""

    async def _resolve(target: str, context: Context | None = None) -> dict[str, Any]:
        """Resolve a target string to a live pane address."""

        resolved = await fleet.resolve(target)
        _emit_log(
            context,
            "debug",
            "Resolved target",
            extra={"target": target, "pane": resolved.pane_address, "resolved_via": resolved.resolved_via.value},
        )
        return {**resolved.to_dict(), "label": format_resolved_label(resolved, target)}

    async def _register_worker(
        worker_id: str,
        primary_pane: str,
        session_name: str,
        task_ref: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        worker = await fleet.register_worker(worker_id, primary_pane, session_name, task_ref)
        _emit_log(context, "info", "Registered worker", extra={"worker_id": worker.id, "pane": primary_pane})
        return _worker_summary(worker)

    async def _add_sub_pane(worker_id: str, pane: str, context: Context | None = None) -> dict[str, Any]:
        index = await fleet.add_sub_pane(worker_id, pane)
        _emit_log(context, "info", "Added sub-pane", extra={"worker_id": worker_id, "pane": pane, "index": index})
        return {"worker_id": worker_id, "pane": pane, "index": index, "target": f"{worker_id}:{index}"}

    async def _list_workers(task_ref: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        workers = await fleet.list_workers(task_ref)
        _emit_log(context, "debug", "Listing workers", extra={"count": len(workers), "task_ref": task_ref})
        return [_worker_summary(worker) for worker in workers]

    async def _deregister(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        removed = await fleet.deregister(worker_id)
        _emit_log(context, "info", "Deregistered worker", extra={"worker_id": worker_id, "removed": removed})
        return {"worker_id": worker_id, "removed": removed}

    async def _spawn_worker(
        task_ref: str | None = None,
        worker_id: str | None = None,
        session: str | None = None,
        command: str | None = None,
        cwd: str | None = None,
        role: str | None = None,
        task_file: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Open a pane running the worker command, register and subscribe to it."""

        worker = await fleet.spawn_worker(
            task_ref,
            worker_id=worker_id,
            session=session,
            command=command,
            cwd=cwd,
            role=role,
            task_file=task_file,
        )
        _emit_log(
            context,
            "info",
            "Spawned worker",
            extra={"worker_id": worker.id, "pane": worker.primary_pane, "session": worker.session_name},
        )
        return _worker_summary(worker)

    async def _split_worker(
        worker_id: str,
        vertical: bool = False,
        command: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        index, pane = await fleet.split_worker(worker_id, vertical=vertical, command=command)
        _emit_log(context, "info", "Split worker", extra={"worker_id": worker_id, "pane": pane, "index": index})
        return {"worker_id": worker_id, "pane": pane, "index": index, "target": f"{worker_id}:{index}"}

    async def _kill_worker(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        killed = await fleet.kill_worker(worker_id)
        _emit_log(context, "info", "Killed worker", extra={"worker_id": worker_id, "panes": killed})
        return {"worker_id": worker_id, "killed_panes": killed, "deregistered": True}

    async def _send(target: str, text: str, enter: bool = True, context: Context | None = None) -> dict[str, Any]:
        resolved = await fleet.send(target, text, enter=enter)
        label = format_resolved_label(resolved, target)
        _emit_log(context, "info", "Sent text", extra={"target": target, "pane": resolved.pane_address})
        return {"sent": True, "label": label, **resolved.to_dict()}

    async def _read(target: str, lines: int | None = None, context: Context | None = None) -> dict[str, Any]:
        output = await fleet.read(target, lines=lines)
        _emit_log(context, "debug", "Captured pane", extra={"target": target, "chars": len(output)})
        return {"target": target, "output": output}

    async def _exec(
        target: str,
        command: str,
        timeout: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        result = await fleet.exec(target, command, timeout=timeout)
        _emit_log(
            context,
            "warning" if not result.ok else "info",
            "Executed command",
            extra={"target": target, "exit_code": result.exit_code, "timed_out": result.timed_out},
        )
        return {
            "target": target,
            "pane": result.pane,
            "command": result.command,
            "output": result.output,
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
            "ok": result.ok,
        }

    async def _submit_batch(
        task_refs: list[str],
        concurrency_limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        batch_id = await fleet.submit_batch(task_refs, concurrency_limit)
        report = await fleet.batch_status(batch_id)
        _emit_log(context, "info", "Submitted batch", extra={"batch_id": batch_id, "tasks": len(task_refs)})
        return report.to_dict()

    async def _submit_pattern(
        pattern: str,
        ready_tasks: list[str],
        concurrency_limit: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        batch_id = await fleet.submit_pattern(pattern, ready_tasks, concurrency_limit)
        report = await fleet.batch_status(batch_id)
        _emit_log(context, "info", "Submitted batch by pattern", extra={"batch_id": batch_id, "pattern": pattern})
        return report.to_dict()

    async def _batch_status(batch_id: str, context: Context | None = None) -> dict[str, Any]:
        report = await fleet.batch_status(batch_id)
        _emit_log(context, "debug", "Batch status", extra={"batch_id": batch_id, "status": report.batch.status.value})
        return report.to_dict()

    async def _cancel_batch(batch_id: str, hard: bool = False, context: Context | None = None) -> dict[str, Any]:
        report = await fleet.cancel_batch(batch_id, hard=hard)
        _emit_log(context, "info", "Cancelled batch", extra={"batch_id": batch_id, "hard": hard})
        return report.to_dict()

    async def _list_batches(context: Context | None = None) -> list[dict[str, Any]]:
        batches = await fleet.list_batches()
        _emit_log(context, "debug", "Listing batches", extra={"count": len(batches)})
        return [
            {
                "batch_id": batch.id,
                "status": batch.status.value,
                "concurrency_limit": batch.concurrency_limit,
                "queued": len(batch.queue),
                "worker_ids": list(batch.worker_ids),
                "created_at": batch.created_at.isoformat(),
            }
            for batch in batches
        ]

    async def _subscribe(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        state = await fleet.subscribe(worker_id)
        _emit_log(context, "info", "Subscribed to worker", extra={"worker_id": worker_id})
        return state.to_dict()

    async def _unsubscribe(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        removed = await fleet.unsubscribe(worker_id)
        return {"worker_id": worker_id, "unsubscribed": removed}

    def _worker_state(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        return fleet.worker_state(worker_id).to_dict()

    async def _evaluate_approval(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        decision = await fleet.evaluate_approval(worker_id)
        _emit_log(
            context,
            "info",
            "Evaluated approval",
            extra={"worker_id": worker_id, "action": decision.action.value},
        )
        return {"worker_id": worker_id, **decision.to_dict()}

    return ToolHandles(
        resolve=server.tool(
            name="resolve",
            description=(
                "Resolve a target (%pane, worker, worker:index, session:window or session) "
                "to a live pane address, reporting which tier matched."
            ),
        )(_resolve),
        register_worker=server.tool(
            name="register_worker",
            description="Register an existing live pane as a worker; re-registering the same pane is idempotent.",
        )(_register_worker),
        add_sub_pane=server.tool(
            name="add_sub_pane",
            description="Attach an existing live pane to a worker as its next sub-pane.",
        )(_add_sub_pane),
        list_workers=server.tool(
            name="list_workers",
            description="List registered workers with their panes, status and task references, optionally only those for one task.",
        )(_list_workers),
        deregister=server.tool(
            name="deregister",
            description="Remove a worker from the registry without killing its panes.",
        )(_deregister),
        spawn_worker=server.tool(
            name="spawn_worker",
            description="Spawn a worker in a new tmux window for a task and register it.",
        )(_spawn_worker),
        split_worker=server.tool(
            name="split_worker",
            description="Split a worker's primary pane and register the new pane as a sub-pane.",
        )(_split_worker),
        kill_worker=server.tool(
            name="kill_worker",
            description="Kill all panes of a worker, then deregister it.",
        )(_kill_worker),
        send=server.tool(
            name="send",
            description="Type text into a target pane, pressing Enter unless disabled.",
        )(_send),
        read=server.tool(
            name="read",
            description="Capture the scrollback of a target pane.",
        )(_read),
        exec=server.tool(
            name="exec",
            description="Run a shell command in a target pane and return its output and exit code.",
        )(_exec),
        submit_batch=server.tool(
            name="submit_batch",
            description="Spawn workers for several task refs under a concurrency ceiling.",
        )(_submit_batch),
        submit_pattern=server.tool(
            name="submit_pattern",
            description="Submit every ready task ref matching a glob pattern as a batch.",
        )(_submit_pattern),
        batch_status=server.tool(
            name="batch_status",
            description="Roll up the status of a batch's members.",
        )(_batch_status),
        cancel_batch=server.tool(
            name="cancel_batch",
            description="Stop spawning queued batch members; hard cancel also kills running ones.",
        )(_cancel_batch),
        list_batches=server.tool(
            name="list_batches",
            description="List known batches.",
        )(_list_batches),
        subscribe=server.tool(
            name="subscribe",
            description="Start tracking a worker's live state from its event stream.",
        )(_subscribe),
        unsubscribe=server.tool(
            name="unsubscribe",
            description="Stop tracking a worker's live state.",
        )(_unsubscribe),
        worker_state=server.tool(
            name="worker_state",
            description="Return the tracked state of a subscribed worker.",
        )(_worker_state),
        evaluate_approval=server.tool(
            name="evaluate_approval",
            description="Decide a worker's pending approval prompt against trust policy; only allow sends keys.",
        )(_evaluate_approval),
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
