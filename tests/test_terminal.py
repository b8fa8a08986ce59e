from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from panefleet.errors import TerminalError
from panefleet.terminal import FakeTerminal, TmuxNotFoundError, TmuxTerminal
from panefleet.terminal.primitive import PaneInfo, is_pane_address, select_pane
from panefleet.terminal.tmux import extract_marked_output, tmux_environment


def _write_fake_tmux(tmp_path: Path) -> tuple[Path, Path]:
    log = tmp_path / "tmux.log"
    script = tmp_path / "tmux"
    script.write_text(
        "#!/bin/sh\n"
        f"echo \"$@\" >> {log}\n"
        "case \"$1\" in\n"
        "  has-session) [ \"$3\" = \"=alpha\" ] && exit 0; exit 1 ;;\n"
        "  list-panes) printf '%%1\\talpha\\t@1\\tmain\\t1\\t0\\n%%2\\talpha\\t@1\\tmain\\t1\\t1\\n' ;;\n"
        "  kill-pane) echo \"can't find pane: $3\" >&2; exit 1 ;;\n"
        "  display-message) echo \"$4\" ;;\n"
        f"  send-keys) [ -f {tmp_path / 'fail-send'} ] && exit 1; exit 0 ;;\n"
        f"  wait-for) [ -f {tmp_path / 'hang'} ] && exec sleep 30; exit 0 ;;\n"
        "  capture-pane)\n"
        f"    start=$(grep -o '__PF_START_[0-9a-f]*__' {log} | tail -n 1)\n"
        "    end=$(echo \"$start\" | sed s/START/END/)\n"
        "    printf '%s\\nhello\\n%s:0\\n' \"$start\" \"$end\" ;;\n"
        "esac\n",
        encoding="utf-8",
    )
    script.chmod(0o755)
    return script, log


def test_tmux_terminal_lists_and_selects_panes(tmp_path: Path) -> None:
    script, _ = _write_fake_tmux(tmp_path)
    terminal = TmuxTerminal(script)

    panes = asyncio.run(terminal.list_panes("alpha"))
    assert [pane.pane for pane in panes] == ["%1", "%2"]
    assert panes[0].window_name == "main"
    assert asyncio.run(terminal.find_pane("alpha")) == "%2"
    assert asyncio.run(terminal.find_pane("beta")) is None


def test_tmux_terminal_sends_literal_text_then_enter(tmp_path: Path) -> None:
    script, log = _write_fake_tmux(tmp_path)
    terminal = TmuxTerminal(script)

    asyncio.run(terminal.send_text("%1", "echo hi"))

    lines = log.read_text(encoding="utf-8").splitlines()
    assert lines == ["send-keys -t %1 -l echo hi", "send-keys -t %1 Enter"]


def test_tmux_terminal_raises_on_failed_command(tmp_path: Path) -> None:
    script, _ = _write_fake_tmux(tmp_path)
    terminal = TmuxTerminal(script)

    with pytest.raises(TerminalError) as excinfo:
        asyncio.run(terminal.kill_pane("%9"))
    assert "can't find pane" in str(excinfo.value)
    assert excinfo.value.target == "%9"


def test_tmux_not_found(tmp_path: Path) -> None:
    with pytest.raises(TmuxNotFoundError):
        TmuxTerminal(tmp_path / "missing")


def test_extract_marked_output_skips_echoed_command_line() -> None:
    captured = "\n".join(
        [
            "$ echo __PF_START_x__; ls; echo __PF_END_x__:$?; tmux wait-for -S c",
            "__PF_START_x__",
            "a.txt",
            "b.txt",
            "__PF_END_x__:2",
            "$",
        ]
    )
    output, exit_code = extract_marked_output(captured, "__PF_START_x__", "__PF_END_x__")
    assert output == "a.txt\nb.txt"
    assert exit_code == 2


def test_extract_marked_output_without_end_marker() -> None:
    output, exit_code = extract_marked_output("__S__\npartial", "__S__", "__E__")
    assert output == "partial"
    assert exit_code is None
    assert extract_marked_output("nothing here", "__S__", "__E__") == ("", None)


def test_select_pane_prefers_named_window_and_active_pane() -> None:
    panes = [
        PaneInfo(pane="%1", session="s", window_id="@1", window_name="main", window_active=True),
        PaneInfo(pane="%2", session="s", window_id="@2", window_name="logs", pane_active=False),
        PaneInfo(pane="%3", session="s", window_id="@2", window_name="logs", pane_active=True),
    ]
    assert select_pane(panes) == "%1"
    assert select_pane(panes, "logs") == "%3"
    assert select_pane(panes, "missing") is None
    assert select_pane([]) is None


def test_is_pane_address() -> None:
    assert is_pane_address("%17")
    assert not is_pane_address("%")
    assert not is_pane_address("genie:1")


def test_tmux_environment_drops_controller_pane_and_virtualenv(monkeypatch) -> None:
    monkeypatch.setenv("VIRTUAL_ENV", "/tmp/venv")
    monkeypatch.setenv("PYTHONPATH", "/tmp/src")
    monkeypatch.setenv("TMUX_PANE", "%0")
    monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,42,0")
    env = tmux_environment()
    assert "VIRTUAL_ENV" not in env
    assert "PYTHONPATH" not in env
    assert "TMUX_PANE" not in env
    assert env["TMUX"] == "/tmp/tmux-1000/default,42,0"


def _record_waiters(monkeypatch) -> list:
    waiters = []
    original = asyncio.create_subprocess_exec

    async def recording(*args, **kwargs):
        process = await original(*args, **kwargs)
        if args[1:2] == ("wait-for",):
            waiters.append(process)
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", recording)
    return waiters


def test_tmux_run_command_reads_marked_output(tmp_path: Path) -> None:
    script, log = _write_fake_tmux(tmp_path)
    terminal = TmuxTerminal(script)

    result = asyncio.run(terminal.run_command("%1", "ls", timeout=5))

    assert result.output == "hello"
    assert result.exit_code == 0
    assert not result.timed_out
    sent = [line for line in log.read_text(encoding="utf-8").splitlines() if line.startswith("send-keys -t %1 -l")]
    assert "; ls; " in sent[0]
    assert "wait-for -S panefleet-" in sent[0]


def test_tmux_run_command_timeout_kills_waiter(tmp_path: Path, monkeypatch) -> None:
    script, _ = _write_fake_tmux(tmp_path)
    (tmp_path / "hang").touch()
    waiters = _record_waiters(monkeypatch)
    terminal = TmuxTerminal(script)

    result = asyncio.run(terminal.run_command("%1", "sleep 100", timeout=0.2))

    assert result.timed_out
    assert result.exit_code is None
    assert len(waiters) == 1
    assert waiters[0].returncode is not None


def test_tmux_run_command_failed_send_reaps_waiter(tmp_path: Path, monkeypatch) -> None:
    script, _ = _write_fake_tmux(tmp_path)
    (tmp_path / "hang").touch()
    (tmp_path / "fail-send").touch()
    waiters = _record_waiters(monkeypatch)
    terminal = TmuxTerminal(script)

    with pytest.raises(TerminalError):
        asyncio.run(terminal.run_command("%1", "ls", timeout=5))
    assert len(waiters) == 1
    assert waiters[0].returncode is not None


def test_fake_terminal_sessions_windows_and_splits() -> None:
    terminal = FakeTerminal()

    async def scenario() -> None:
        first = await terminal.create_session("genie", window_name="main")
        second = await terminal.create_window("genie", "OMNI")
        split = await terminal.split_pane(second.pane)

        assert await terminal.session_exists("genie")
        assert await terminal.find_pane("genie") == first.pane
        assert await terminal.find_pane("genie", "OMNI") == second.pane
        assert split != second.pane

        terminal.kill_out_of_band(first.pane)
        assert not await terminal.is_pane_live(first.pane)
        with pytest.raises(TerminalError):
            await terminal.send_keys(first.pane, ["Enter"])

        with pytest.raises(TerminalError):
            await terminal.create_window("nowhere", "x")

    asyncio.run(scenario())


def test_fake_terminal_run_command_times_out_when_handler_hangs() -> None:
    terminal = FakeTerminal(command_handler=lambda pane, command: None if command == "sleep" else ("ok", 0))

    async def scenario():
        info = await terminal.create_session("s")
        done = await terminal.run_command(info.pane, "echo ok", timeout=1)
        hung = await terminal.run_command(info.pane, "sleep", timeout=0.01)
        return info, done, hung

    info, done, hung = asyncio.run(scenario())
    assert done.ok and done.output == "ok"
    assert hung.timed_out and hung.exit_code is None and not hung.ok
    assert asyncio.run(terminal.capture_pane(info.pane)) == "ok"
