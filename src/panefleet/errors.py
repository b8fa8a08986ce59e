"""Error taxonomy surfaced to callers of the fleet."""

from __future__ import annotations


class FleetError(RuntimeError):
    """Base class for diagnosable fleet failures.

    Every error names the offending target and a concrete next step, so the
    rendered message is always actionable on its own.
    """

    kind = "fleet-error"

    def __init__(self, message: str, *, target: str | None = None, remediation: str | None = None) -> None:
        self.message = message
        self.target = target
        self.remediation = remediation
        super().__init__(self._render())

    def _render(self) -> str:
        text = self.message
        if self.remediation:
            text = f"{text}\n{self.remediation}"
        return text

    def to_dict(self) -> dict[str, str | None]:
        return {
            "kind": self.kind,
            "target": self.target,
            "message": self.message,
            "remediation": self.remediation,
        }


class UnknownTarget(FleetError):
    """No resolution tier matched the target."""

    kind = "unknown-target"


class WorkerNotFound(UnknownTarget):
    """The worker id is not present in the registry."""

    kind = "worker-not-found"


class InvalidTarget(FleetError):
    """The target is syntactically invalid (e.g. a non-numeric sub-pane index)."""

    kind = "invalid-target"


class DeadPane(FleetError):
    """A pane failed its liveness check."""

    kind = "dead-pane"


class DeadWorker(DeadPane):
    """A registered worker's primary pane is gone; the record has been pruned."""

    kind = "dead-worker"


class AmbiguousTarget(FleetError):
    """Reserved for named-role addressing; unreachable with the current grammar."""

    kind = "ambiguous-target"


class RegistryUnavailable(FleetError):
    """The backing store could not be read or written."""

    kind = "registry-unavailable"


class ConcurrencyLimitExceeded(FleetError):
    """Internal invariant violation: a batch had more active members than allowed."""

    kind = "concurrency-limit-exceeded"


class BatchNotFound(FleetError):
    """The batch id is not present in the batch store."""

    kind = "batch-not-found"


class TerminalError(FleetError):
    """The terminal multiplexer rejected or failed a command."""

    kind = "terminal-error"


LIST_WORKERS_HINT = "Run the list_workers operation to see registered workers."
LIST_SESSIONS_HINT = "Run 'tmux list-sessions' to see sessions."


__all__ = [
    "AmbiguousTarget",
    "BatchNotFound",
    "ConcurrencyLimitExceeded",
    "DeadPane",
    "DeadWorker",
    "FleetError",
    "InvalidTarget",
    "LIST_SESSIONS_HINT",
    "LIST_WORKERS_HINT",
    "RegistryUnavailable",
    "TerminalError",
    "UnknownTarget",
    "WorkerNotFound",
]
