"""panefleet diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from panefleet.approve import AuditEntry, JsonlAuditLog
from panefleet.batch import Batch, BatchReport
from panefleet.config import FleetSettings
from panefleet.errors import RegistryUnavailable
from panefleet.registry import JsonFileStore, Worker, WorkerRegistry
from panefleet.storage import ActivityLog, ChromaUnavailableError


def load_workers(settings: FleetSettings) -> list[Worker]:
    registry = WorkerRegistry(JsonFileStore(settings.resolved_registry_path(), collection="workers"))
    try:
        return asyncio.run(registry.list())
    except RegistryUnavailable as exc:
        print(f"Registry unavailable: {exc}")
        raise SystemExit(1)


def load_batches(settings: FleetSettings) -> list[Batch]:
    store = JsonFileStore(settings.resolved_batches_path(), collection="batches")
    try:
        records = asyncio.run(store.list())
    except RegistryUnavailable as exc:
        print(f"Registry unavailable: {exc}")
        raise SystemExit(1)
    return [Batch.model_validate(record) for _, record in sorted(records.items())]


def load_audit(settings: FleetSettings, *, worker_id: str | None, limit: int | None) -> list[AuditEntry]:
    if settings.activity_backend == "chroma":
        try:
            return ActivityLog(settings.chroma_persist_path).audit_entries(worker_id=worker_id, limit=limit)
        except ChromaUnavailableError as exc:
            print(f"Chroma unavailable: {exc}")
            raise SystemExit(1)
    return JsonlAuditLog(settings.resolved_audit_path()).entries(worker_id=worker_id, limit=limit)


def cmd_workers(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    workers = load_workers(settings)
    if args.json:
        print(json.dumps([worker.to_record() for worker in workers], indent=2))
        return
    for worker in workers:
        panes = ", ".join(worker.panes)
        print(f"{worker.id} [{worker.status.value}] {worker.session_name} -> {panes}")


def cmd_batches(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    batches = load_batches(settings)
    if args.batch_id:
        batches = [batch for batch in batches if batch.id == args.batch_id]
    print(json.dumps([BatchReport.from_batch(batch).to_dict() for batch in batches], indent=2))


def cmd_audit(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    entries = load_audit(settings, worker_id=args.worker_id, limit=args.limit)
    print(json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = FleetSettings()
    workers = load_workers(settings)
    batches = load_batches(settings)
    entries = load_audit(settings, worker_id=None, limit=None)

    worker_counts: dict[str, int] = {}
    for worker in workers:
        worker_counts[worker.status.value] = worker_counts.get(worker.status.value, 0) + 1

    batch_counts: dict[str, int] = {}
    for batch in batches:
        batch_counts[batch.status.value] = batch_counts.get(batch.status.value, 0) + 1

    decision_counts: dict[str, int] = {}
    for entry in entries:
        decision_counts[entry.action.value] = decision_counts.get(entry.action.value, 0) + 1

    metrics = {
        "workers_total": len(workers),
        "worker_status_counts": worker_counts,
        "batches_total": len(batches),
        "batch_status_counts": batch_counts,
        "approval_decisions": len(entries),
        "approval_action_counts": decision_counts,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="panefleet diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_workers = sub.add_parser("workers", help="List registered workers")
    p_workers.add_argument("--json", action="store_true", help="Output JSON")
    p_workers.set_defaults(func=cmd_workers)

    p_batches = sub.add_parser("batches", help="Show batch roll-ups")
    p_batches.add_argument("--batch-id")
    p_batches.set_defaults(func=cmd_batches)

    p_audit = sub.add_parser("audit", help="List approval decisions")
    p_audit.add_argument("--worker-id")
    p_audit.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N decisions",
    )
    p_audit.set_defaults(func=cmd_audit)

    p_metrics = sub.add_parser("metrics", help="Show worker/batch/approval counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
