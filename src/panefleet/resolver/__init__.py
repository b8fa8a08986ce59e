"""Target parsing and resolution."""

from .parse import (
    RawAddress,
    SessionRef,
    SessionWindowRef,
    TargetRef,
    WorkerRef,
    WorkerSubRef,
    parse_target,
)
from .resolver import ResolvedTarget, ResolvedVia, TargetResolver, format_resolved_label

__all__ = [
    "RawAddress",
    "ResolvedTarget",
    "ResolvedVia",
    "SessionRef",
    "SessionWindowRef",
    "TargetRef",
    "TargetResolver",
    "WorkerRef",
    "WorkerSubRef",
    "format_resolved_label",
    "parse_target",
]
