"""In-memory terminal double used by tests and dry runs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, Sequence

from ..errors import TerminalError
from .primitive import CommandResult, PaneInfo, select_pane

CommandHandler = Callable[[str, str], "tuple[str, int] | None"]


@dataclass
class FakePane:
    pane: str
    session: str
    window_id: str
    output: list[str] = field(default_factory=list)
    keys: list[str] = field(default_factory=list)
    alive: bool = True


@dataclass
class FakeWindow:
    window_id: str
    name: str
    session: str
    panes: list[str] = field(default_factory=list)


class FakeTerminal:
    """Test double that simulates tmux sessions, windows and panes.

    ``command_handler`` receives ``(pane, command)`` and returns
    ``(output, exit_code)``; returning ``None`` makes the command hang until
    the caller's timeout expires.
    """

    def __init__(self, command_handler: CommandHandler | None = None) -> None:
        self._next_pane = 0
        self._next_window = 0
        self._panes: dict[str, FakePane] = {}
        self._windows: dict[str, FakeWindow] = {}
        self._sessions: dict[str, list[str]] = {}
        self._active_window: dict[str, str] = {}
        self._command_handler = command_handler or (lambda pane, command: ("", 0))
        self.failing_kills: set[str] = set()
        self.calls: list[tuple[str, ...]] = []

    # -- helpers for tests -------------------------------------------------

    def _new_pane(self, session: str, window_id: str) -> FakePane:
        pane = FakePane(pane=f"%{self._next_pane}", session=session, window_id=window_id)
        self._next_pane += 1
        self._panes[pane.pane] = pane
        self._windows[window_id].panes.append(pane.pane)
        return pane

    def _new_window(self, session: str, name: str) -> FakeWindow:
        window = FakeWindow(window_id=f"@{self._next_window}", name=name, session=session)
        self._next_window += 1
        self._windows[window.window_id] = window
        self._sessions.setdefault(session, []).append(window.window_id)
        self._active_window.setdefault(session, window.window_id)
        return window

    def _info(self, pane: FakePane) -> PaneInfo:
        window = self._windows[pane.window_id]
        live_panes = [p for p in window.panes if self._panes[p].alive]
        return PaneInfo(
            pane=pane.pane,
            session=pane.session,
            window_id=window.window_id,
            window_name=window.name,
            window_active=self._active_window.get(pane.session) == window.window_id,
            pane_active=bool(live_panes) and live_panes[0] == pane.pane,
        )

    def write_output(self, pane: str, text: str) -> None:
        self._panes[pane].output.extend(text.splitlines())

    def keys_sent(self, pane: str) -> list[str]:
        return list(self._panes[pane].keys)

    def kill_out_of_band(self, pane: str) -> None:
        """Simulate a pane dying without the controller's involvement."""

        self._panes[pane].alive = False

    # -- TerminalPrimitive -------------------------------------------------

    async def session_exists(self, session: str) -> bool:
        self.calls.append(("session_exists", session))
        return any(
            self._panes[p].alive for w in self._sessions.get(session, []) for p in self._windows[w].panes
        )

    async def create_session(
        self,
        session: str,
        *,
        window_name: str | None = None,
        command: str | None = None,
        cwd: str | None = None,
    ) -> PaneInfo:
        self.calls.append(("create_session", session))
        if await self.session_exists(session):
            raise TerminalError(f"duplicate session: {session}", target=session)
        window = self._new_window(session, window_name or "0")
        pane = self._new_pane(session, window.window_id)
        if command:
            pane.keys.append(command)
        return self._info(pane)

    async def create_window(
        self,
        session: str,
        window_name: str,
        *,
        command: str | None = None,
        cwd: str | None = None,
    ) -> PaneInfo:
        self.calls.append(("create_window", session, window_name))
        if not await self.session_exists(session):
            raise TerminalError(f"can't find session: {session}", target=session)
        window = self._new_window(session, window_name)
        pane = self._new_pane(session, window.window_id)
        if command:
            pane.keys.append(command)
        return self._info(pane)

    async def split_pane(self, pane: str, *, vertical: bool = False, command: str | None = None) -> str:
        self.calls.append(("split_pane", pane))
        source = self._require_live(pane)
        new_pane = self._new_pane(source.session, source.window_id)
        if command:
            new_pane.keys.append(command)
        return new_pane.pane

    async def kill_pane(self, pane: str) -> None:
        self.calls.append(("kill_pane", pane))
        if pane in self.failing_kills:
            raise TerminalError(f"kill-pane failed for {pane}", target=pane)
        self._require_live(pane).alive = False

    async def list_panes(self, session: str | None = None) -> list[PaneInfo]:
        self.calls.append(("list_panes", session or ""))
        return [
            self._info(pane)
            for pane in self._panes.values()
            if pane.alive and (session is None or pane.session == session)
        ]

    async def is_pane_live(self, pane: str) -> bool:
        self.calls.append(("is_pane_live", pane))
        entry = self._panes.get(pane)
        return entry is not None and entry.alive

    async def pane_session(self, pane: str) -> str | None:
        entry = self._panes.get(pane)
        if entry is None or not entry.alive:
            return None
        return entry.session

    async def find_pane(self, session: str, window: str | None = None) -> str | None:
        self.calls.append(("find_pane", session, window or ""))
        return select_pane(await self.list_panes(session), window)

    async def send_keys(self, pane: str, keys: Sequence[str]) -> None:
        self.calls.append(("send_keys", pane, *keys))
        self._require_live(pane).keys.extend(keys)

    async def send_text(self, pane: str, text: str, *, enter: bool = True) -> None:
        self.calls.append(("send_text", pane, text))
        entry = self._require_live(pane)
        entry.keys.append(text)
        if enter:
            entry.keys.append("Enter")

    async def capture_pane(self, pane: str, *, lines: int | None = None) -> str:
        entry = self._require_live(pane)
        output = entry.output[-lines:] if lines else entry.output
        return "\n".join(output)

    async def run_command(self, pane: str, command: str, *, timeout: float) -> CommandResult:
        self.calls.append(("run_command", pane, command))
        self._require_live(pane)
        outcome = self._command_handler(pane, command)
        if outcome is None:
            await asyncio.sleep(timeout)
            return CommandResult(pane=pane, command=command, output="", exit_code=None, timed_out=True)
        output, exit_code = outcome
        self.write_output(pane, output)
        return CommandResult(pane=pane, command=command, output=output, exit_code=exit_code)

    def _require_live(self, pane: str) -> FakePane:
        entry = self._panes.get(pane)
        if entry is None or not entry.alive:
            raise TerminalError(f"can't find pane: {pane}", target=pane)
        return entry


__all__ = ["FakePane", "FakeTerminal", "FakeWindow"]
