"""Classify target strings into resolution variants.

Parsing is a pure function of the target string and the set of registered
worker ids; no terminal or registry access happens here.

Grammar, first match wins:

1. ``%<n>``                    -> RawAddress
2. ``<worker>:<index>``        -> WorkerSubRef (left side is a registered worker)
3. ``<worker>``                -> WorkerRef (whole string is a registered worker)
4. ``<session>:<window>``      -> SessionWindowRef
5. ``<session>``               -> SessionRef
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Container, Union

from ..errors import LIST_WORKERS_HINT, UnknownTarget

RAW_PREFIX = "%"
SEPARATOR = ":"


@dataclass(frozen=True, slots=True)
class RawAddress:
    pane: str


@dataclass(frozen=True, slots=True)
class WorkerSubRef:
    worker_id: str
    index_text: str


@dataclass(frozen=True, slots=True)
class WorkerRef:
    worker_id: str


@dataclass(frozen=True, slots=True)
class SessionWindowRef:
    session: str
    window: str


@dataclass(frozen=True, slots=True)
class SessionRef:
    session: str


TargetRef = Union[RawAddress, WorkerSubRef, WorkerRef, SessionWindowRef, SessionRef]


def parse_target(target: str, worker_ids: Container[str]) -> TargetRef:
    """Return the tagged variant for ``target`` given the registered worker ids."""

    if not target or not target.strip():
        raise UnknownTarget(
            "Empty target.",
            target=target,
            remediation=LIST_WORKERS_HINT,
        )

    if target.startswith(RAW_PREFIX):
        return RawAddress(pane=target)

    left, separator, right = target.partition(SEPARATOR)
    if separator and left in worker_ids:
        return WorkerSubRef(worker_id=left, index_text=right)
    if target in worker_ids:
        return WorkerRef(worker_id=target)
    if separator:
        return SessionWindowRef(session=left, window=right)
    return SessionRef(session=target)


__all__ = [
    "RAW_PREFIX",
    "RawAddress",
    "SEPARATOR",
    "SessionRef",
    "SessionWindowRef",
    "TargetRef",
    "WorkerRef",
    "WorkerSubRef",
    "parse_target",
]
