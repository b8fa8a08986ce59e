"""Unattended resolution of approval prompts."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Awaitable, Callable, Sequence

from ..errors import DeadPane, FleetError, UnknownTarget, WorkerNotFound
from ..events import EventAggregator
from ..resolver import ResolvedVia, TargetResolver
from ..terminal import TerminalPrimitive, is_pane_address
from .audit import AuditSink
from .models import ApprovalAction, AuditEntry, Decision, TrustRule
from .policy import PolicyLoadError
from .rules import evaluate_rules

logger = logging.getLogger(__name__)

RulesProvider = Callable[[str], Awaitable[list[TrustRule]]]


class AutoApproveEngine:
    """Decides whether a worker's pending prompt is approved, denied or escalated.

    Only ``allow`` sends anything to the worker, and only after the decision
    has been written to the audit trail. Every other path, including errors
    along the way, ends in ``ask``.
    """

    def __init__(
        self,
        aggregator: EventAggregator,
        resolver: TargetResolver,
        terminal: TerminalPrimitive,
        rules_provider: RulesProvider,
        audit: AuditSink,
        *,
        approve_keys: Sequence[str] = ("Enter",),
    ) -> None:
        self._aggregator = aggregator
        self._resolver = resolver
        self._terminal = terminal
        self._rules_provider = rules_provider
        self._audit = audit
        self._approve_keys = tuple(approve_keys)
        self._running = False
        self._stats: Counter[str] = Counter()

    def start(self) -> None:
        self._running = True
        logger.info("Auto-approve engine started")

    def stop(self) -> None:
        self._running = False
        logger.info("Auto-approve engine stopped")

    @property
    def running(self) -> bool:
        return self._running

    def stats(self) -> dict[str, int]:
        keys = ("evaluated", "allow", "deny", "ask", "applied", "audit_failures")
        return {key: self._stats.get(key, 0) for key in keys}

    def _finish(self, worker_id: str, decision: Decision) -> Decision:
        self._stats["evaluated"] += 1
        self._stats[decision.action.value] += 1
        logger.info(
            "Approval decision",
            extra={
                "worker_id": worker_id,
                "action": decision.action.value,
                "rule_id": decision.rule.id if decision.rule else None,
                "reason": decision.reason,
            },
        )
        return decision

    async def evaluate(self, worker_id: str) -> Decision:
        if not self._running:
            return self._finish(worker_id, Decision(ApprovalAction.ASK, None, "Auto-approve engine is stopped"))

        try:
            state = self._aggregator.get_state(worker_id)
        except WorkerNotFound:
            return self._finish(
                worker_id,
                Decision(ApprovalAction.ASK, None, f"No live state for {worker_id}; subscribe first"),
            )

        prompt = state.pending_prompt
        if prompt is None:
            return self._finish(worker_id, Decision(ApprovalAction.ASK, None, "No pending approval prompt"))

        try:
            rules = await self._rules_provider(worker_id)
        except (PolicyLoadError, FleetError) as exc:
            decision = Decision(ApprovalAction.ASK, None, f"Trust policy unavailable: {exc}")
        else:
            decision = evaluate_rules(rules, prompt.tool_name, prompt.tool_input)

        pane: str | None = None
        if decision.action == ApprovalAction.ALLOW:
            try:
                resolved = await self._resolver.resolve(worker_id)
            except (DeadPane, UnknownTarget) as exc:
                await self._aggregator.mark_dead(worker_id)
                decision = Decision(ApprovalAction.ASK, decision.rule, f"Approval not sent: {exc.message}")
            except FleetError as exc:
                decision = Decision(ApprovalAction.ASK, decision.rule, f"Approval not sent: {exc.message}")
            else:
                if resolved.resolved_via != ResolvedVia.WORKER_PRIMARY or resolved.worker_id != worker_id:
                    # The name now resolves to something other than this worker's primary pane.
                    await self._aggregator.mark_dead(worker_id)
                    decision = Decision(
                        ApprovalAction.ASK,
                        decision.rule,
                        f"Approval not sent: worker '{worker_id}' is no longer registered",
                    )
                elif not is_pane_address(resolved.pane_address):
                    decision = Decision(
                        ApprovalAction.ASK, decision.rule, f"Refusing to send keys to {resolved.pane_address}"
                    )
                else:
                    pane = resolved.pane_address

        entry = AuditEntry(
            worker_id=worker_id,
            action=decision.action,
            reason=decision.reason,
            rule_id=decision.rule.id if decision.rule else None,
            tool_name=prompt.tool_name,
            pane_address=pane,
            prompt=prompt.text,
        )
        try:
            await self._audit.record(entry)
        except (OSError, RuntimeError) as exc:
            self._stats["audit_failures"] += 1
            logger.error("Failed to write audit record", extra={"worker_id": worker_id, "error": str(exc)})
            if decision.action == ApprovalAction.ALLOW:
                decision = Decision(
                    ApprovalAction.ASK, decision.rule, "Audit record could not be written; approval withheld"
                )
            return self._finish(worker_id, decision)

        if decision.action == ApprovalAction.ALLOW and pane is not None:
            try:
                await self._terminal.send_keys(pane, self._approve_keys)
            except FleetError as exc:
                logger.warning("Failed to send approval keys", extra={"worker_id": worker_id, "error": str(exc)})
                decision = Decision(ApprovalAction.ASK, decision.rule, f"Approval keys not delivered: {exc.message}")
            else:
                await self._aggregator.clear_prompt(worker_id)
                self._stats["applied"] += 1

        return self._finish(worker_id, decision)


__all__ = ["AutoApproveEngine", "RulesProvider"]
