"""Narrow capability interface over the terminal multiplexer."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol, Sequence

PANE_ADDRESS_PATTERN = re.compile(r"^%\d+$")


def is_pane_address(value: str) -> bool:
    """Return True when ``value`` is a native pane address such as ``%17``."""

    return bool(PANE_ADDRESS_PATTERN.match(value))


@dataclass(slots=True)
class PaneInfo:
    """A pane as reported by the multiplexer."""

    pane: str
    session: str
    window_id: str
    window_name: str
    window_active: bool = False
    pane_active: bool = False


@dataclass(slots=True)
class CommandResult:
    """Outcome of running a command inside a pane."""

    pane: str
    command: str
    output: str
    exit_code: int | None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


class TerminalPrimitive(Protocol):
    """Capabilities the fleet needs from a terminal multiplexer."""

    async def session_exists(self, session: str) -> bool:
        ...

    async def create_session(
        self,
        session: str,
        *,
        window_name: str | None = None,
        command: str | None = None,
        cwd: str | None = None,
    ) -> PaneInfo:
        ...

    async def create_window(
        self,
        session: str,
        window_name: str,
        *,
        command: str | None = None,
        cwd: str | None = None,
    ) -> PaneInfo:
        ...

    async def split_pane(self, pane: str, *, vertical: bool = False, command: str | None = None) -> str:
        ...

    async def kill_pane(self, pane: str) -> None:
        ...

    async def list_panes(self, session: str | None = None) -> list[PaneInfo]:
        ...

    async def is_pane_live(self, pane: str) -> bool:
        ...

    async def pane_session(self, pane: str) -> str | None:
        ...

    async def find_pane(self, session: str, window: str | None = None) -> str | None:
        ...

    async def send_keys(self, pane: str, keys: Sequence[str]) -> None:
        ...

    async def send_text(self, pane: str, text: str, *, enter: bool = True) -> None:
        ...

    async def capture_pane(self, pane: str, *, lines: int | None = None) -> str:
        ...

    async def run_command(self, pane: str, command: str, *, timeout: float) -> CommandResult:
        ...


def select_pane(panes: Sequence[PaneInfo], window: str | None = None) -> str | None:
    """Pick the pane a session or session:window name refers to.

    With a window name, only panes of that window qualify; otherwise the active
    window is used (falling back to the first listed). Within the window the
    active pane wins, else the first pane.
    """

    if not panes:
        return None
    if window is not None:
        candidates = [pane for pane in panes if pane.window_name == window or pane.window_id == window]
    else:
        active_window = next((pane.window_id for pane in panes if pane.window_active), panes[0].window_id)
        candidates = [pane for pane in panes if pane.window_id == active_window]
    if not candidates:
        return None
    chosen = next((pane for pane in candidates if pane.pane_active), candidates[0])
    return chosen.pane


__all__ = [
    "CommandResult",
    "PANE_ADDRESS_PATTERN",
    "PaneInfo",
    "TerminalPrimitive",
    "is_pane_address",
    "select_pane",
]
