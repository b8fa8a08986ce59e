"""Async tmux implementation of the terminal primitive."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence
from uuid import uuid4

from ..errors import TerminalError
from .primitive import CommandResult, PaneInfo, select_pane

logger = logging.getLogger(__name__)

_PANE_FORMAT = "\t".join(
    [
        "#{pane_id}",
        "#{session_name}",
        "#{window_id}",
        "#{window_name}",
        "#{window_active}",
        "#{pane_active}",
    ]
)
_HISTORY_LINES = 2000

# Dropped from the environment of every tmux client. TMUX_PANE would make
# untargeted commands default to the controller's own pane; TMUX is kept since
# it names the server socket.
_DROPPED_VARS = frozenset({"TMUX_PANE", "PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV"})


def tmux_environment() -> dict[str, str]:
    """Environment for tmux clients and, through the server, new worker shells."""

    return {key: value for key, value in os.environ.items() if key not in _DROPPED_VARS}


class TmuxNotFoundError(TerminalError):
    """Raised when the tmux executable cannot be located."""

    kind = "tmux-not-found"


@dataclass(slots=True)
class TmuxResult:
    """Holds the outcome of a tmux invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TmuxTerminal:
    """Drive tmux through asynchronous subprocess calls."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise TmuxNotFoundError(
                f"tmux executable not found at {candidate}",
                target=str(candidate),
                remediation="Set TMUX_PATH to a valid tmux binary.",
            )

        binary = shutil.which("tmux")
        if binary is None:
            raise TmuxNotFoundError(
                "tmux executable not found on PATH",
                target="tmux",
                remediation="Install tmux or set TMUX_PATH.",
            )
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def _invoke(self, *args: str) -> TmuxResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=tmux_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return TmuxResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)

    async def _run(self, *args: str, target: str | None = None) -> str:
        result = await self._invoke(*args)
        if not result.ok:
            raise TerminalError(
                f"tmux {args[0]} failed with exit code {result.returncode}: {result.stderr.strip()}",
                target=target,
                remediation="Run 'tmux list-panes -a' to inspect the current layout.",
            )
        return result.stdout.strip()

    async def session_exists(self, session: str) -> bool:
        result = await self._invoke("has-session", "-t", f"={session}")
        return result.ok

    async def create_session(
        self,
        session: str,
        *,
        window_name: str | None = None,
        command: str | None = None,
        cwd: str | None = None,
    ) -> PaneInfo:
        args = ["new-session", "-d", "-P", "-F", _PANE_FORMAT, "-s", session]
        if window_name:
            args.extend(["-n", window_name])
        if cwd:
            args.extend(["-c", cwd])
        if command:
            args.append(command)
        output = await self._run(*args, target=session)
        return _parse_pane_line(output)

    async def create_window(
        self,
        session: str,
        window_name: str,
        *,
        command: str | None = None,
        cwd: str | None = None,
    ) -> PaneInfo:
        args = ["new-window", "-d", "-P", "-F", _PANE_FORMAT, "-t", f"={session}:", "-n", window_name]
        if cwd:
            args.extend(["-c", cwd])
        if command:
            args.append(command)
        output = await self._run(*args, target=f"{session}:{window_name}")
        return _parse_pane_line(output)

    async def split_pane(self, pane: str, *, vertical: bool = False, command: str | None = None) -> str:
        args = ["split-window", "-d", "-P", "-F", "#{pane_id}", "-t", pane, "-v" if vertical else "-h"]
        if command:
            args.append(command)
        return await self._run(*args, target=pane)

    async def kill_pane(self, pane: str) -> None:
        await self._run("kill-pane", "-t", pane, target=pane)

    async def list_panes(self, session: str | None = None) -> list[PaneInfo]:
        if session is None:
            result = await self._invoke("list-panes", "-a", "-F", _PANE_FORMAT)
        else:
            result = await self._invoke("list-panes", "-s", "-t", f"={session}", "-F", _PANE_FORMAT)
        if not result.ok:
            # tmux reports a missing session or server as a failure; both mean "no panes".
            return []
        return [_parse_pane_line(line) for line in result.stdout.splitlines() if line.strip()]

    async def is_pane_live(self, pane: str) -> bool:
        result = await self._invoke("display-message", "-p", "-t", pane, "#{pane_id}")
        return result.ok and result.stdout.strip() == pane

    async def pane_session(self, pane: str) -> str | None:
        result = await self._invoke("display-message", "-p", "-t", pane, "#{session_name}")
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def find_pane(self, session: str, window: str | None = None) -> str | None:
        if not await self.session_exists(session):
            return None
        return select_pane(await self.list_panes(session), window)

    async def send_keys(self, pane: str, keys: Sequence[str]) -> None:
        await self._run("send-keys", "-t", pane, *keys, target=pane)

    async def send_text(self, pane: str, text: str, *, enter: bool = True) -> None:
        await self._run("send-keys", "-t", pane, "-l", text, target=pane)
        if enter:
            await self._run("send-keys", "-t", pane, "Enter", target=pane)

    async def capture_pane(self, pane: str, *, lines: int | None = None) -> str:
        args = ["capture-pane", "-p", "-J", "-t", pane]
        if lines:
            args.extend(["-S", f"-{lines}"])
        return await self._run(*args, target=pane)

    async def run_command(self, pane: str, command: str, *, timeout: float) -> CommandResult:
        token = uuid4().hex[:10]
        channel = f"panefleet-{token}"
        start_marker = f"__PF_START_{token}__"
        end_marker = f"__PF_END_{token}__"
        wrapped = (
            f"echo {start_marker}; {command}; echo {end_marker}:$?; "
            f"{self._executable_path} wait-for -S {channel}"
        )

        waiter = await asyncio.create_subprocess_exec(
            str(self._executable_path),
            "wait-for",
            channel,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            env=tmux_environment(),
        )
        timed_out = False
        try:
            await self.send_text(pane, wrapped)
            try:
                await asyncio.wait_for(waiter.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(
                    "Command timed out",
                    extra={"pane": pane, "timeout": timeout, "command": command[:200]},
                )
        finally:
            if waiter.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    waiter.kill()
                await waiter.wait()

        captured = await self.capture_pane(pane, lines=_HISTORY_LINES)
        output, exit_code = extract_marked_output(captured, start_marker, end_marker)
        return CommandResult(
            pane=pane,
            command=command,
            output=output,
            exit_code=None if timed_out else exit_code,
            timed_out=timed_out,
        )


def _parse_pane_line(line: str) -> PaneInfo:
    parts = line.strip().split("\t")
    if len(parts) < 6:
        raise TerminalError(
            f"Unexpected tmux pane format: {line!r}",
            remediation="Check that the tmux version supports -F format strings.",
        )
    pane, session, window_id, window_name, window_active, pane_active = parts[:6]
    return PaneInfo(
        pane=pane,
        session=session,
        window_id=window_id,
        window_name=window_name,
        window_active=window_active == "1",
        pane_active=pane_active == "1",
    )


def extract_marked_output(captured: str, start_marker: str, end_marker: str) -> tuple[str, int | None]:
    """Return the text printed between the markers and the recorded exit code.

    The typed command line also contains both markers, so only lines that
    consist of a marker alone are taken as boundaries.
    """

    lines = captured.splitlines()
    start_index = None
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip() == start_marker:
            start_index = index
            break
    if start_index is None:
        return "", None

    end_pattern = re.compile(rf"^{re.escape(end_marker)}:(\d+)$")
    body: list[str] = []
    for line in lines[start_index + 1 :]:
        match = end_pattern.match(line.strip())
        if match:
            return "\n".join(body).rstrip(), int(match.group(1))
        body.append(line)
    return "\n".join(body).rstrip(), None


__all__ = ["TmuxNotFoundError", "TmuxResult", "TmuxTerminal", "extract_marked_output", "tmux_environment"]
