from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from panefleet.approve import ApprovalAction, PolicyLoader
from panefleet.batch import BatchStatus, MemberStatus
from panefleet.config import FleetSettings
from panefleet.errors import DeadWorker, InvalidTarget, TerminalError, WorkerNotFound
from panefleet.events import Event, JsonlEventSource
from panefleet.fleet import Fleet
from panefleet.registry import MemoryStore, WorkerStatus
from panefleet.terminal import FakeTerminal


def _settings(tmp_path: Path, **overrides) -> FleetSettings:
    values = {
        "PANEFLEET_STATE_DIR": tmp_path / "state",
        "PANEFLEET_REPO_PATH": tmp_path / "repo",
        "PANEFLEET_EXEC_TIMEOUT": 5,
        "PANEFLEET_POLL_INTERVAL": 60,
    }
    values.update(overrides)
    return FleetSettings(**values)


def _fleet(tmp_path: Path, terminal: FakeTerminal | None = None, **overrides) -> Fleet:
    return Fleet(
        _settings(tmp_path, **overrides),
        terminal or FakeTerminal(),
        worker_store=MemoryStore(),
        batch_store=MemoryStore(),
    )


def test_spawn_worker_creates_session_then_windows(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        first = await fleet.spawn_worker("bd-42", task_file="tasks/bd-42.md", subscribe=False)
        second = await fleet.spawn_worker("bd-42", subscribe=False)

        assert first.id == "bd-42"
        assert second.id == "bd-42-2"
        assert first.session_name == "fleet"
        assert first.status == WorkerStatus.RUNNING
        assert first.metadata == {"task_file": "tasks/bd-42.md"}
        assert first.repo_path == str(tmp_path / "repo")
        assert terminal.keys_sent(first.primary_pane) == ["claude"]
        assert [call[0] for call in terminal.calls if call[0].startswith("create_")] == [
            "create_session",
            "create_window",
        ]

        with pytest.raises(InvalidTarget):
            await fleet.spawn_worker(worker_id="bd-42", subscribe=False)
        with pytest.raises(ValueError):
            await fleet.spawn_worker()

    asyncio.run(scenario())


def test_split_then_address_sub_pane(tmp_path: Path) -> None:
    fleet = _fleet(tmp_path)

    async def scenario() -> None:
        worker = await fleet.spawn_worker("bd-42", subscribe=False)
        index, pane = await fleet.split_worker("bd-42")
        assert index == 1
        resolved = await fleet.resolve("bd-42:1")
        assert resolved.pane_address == pane
        assert (await fleet.resolve("bd-42")).pane_address == worker.primary_pane

    asyncio.run(scenario())


def test_kill_worker_kills_sub_panes_first_then_deregisters(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        worker = await fleet.spawn_worker("bd-42", subscribe=False)
        _, pane = await fleet.split_worker("bd-42")

        killed = await fleet.kill_worker("bd-42")
        assert killed == [pane, worker.primary_pane]
        assert await fleet.list_workers() == []
        with pytest.raises(WorkerNotFound):
            await fleet.kill_worker("bd-42")

    asyncio.run(scenario())


def test_failed_kill_keeps_registry_entry(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        worker = await fleet.spawn_worker("bd-42", subscribe=False)
        terminal.failing_kills.add(worker.primary_pane)
        with pytest.raises(TerminalError):
            await fleet.kill_worker("bd-42")
        assert [w.id for w in await fleet.list_workers()] == ["bd-42"]

        terminal.failing_kills.clear()
        assert await fleet.kill_worker("bd-42") == [worker.primary_pane]

    asyncio.run(scenario())


def test_send_read_and_exec(tmp_path: Path) -> None:
    def handler(pane: str, command: str):
        if command == "sleep 100":
            return None
        return f"ran {command}", 0

    terminal = FakeTerminal(command_handler=handler)
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        worker = await fleet.spawn_worker("bd-42", subscribe=False)
        resolved = await fleet.send("bd-42", "hello")
        assert resolved.pane_address == worker.primary_pane
        assert terminal.keys_sent(worker.primary_pane)[-2:] == ["hello", "Enter"]

        result = await fleet.exec("bd-42", "ls")
        assert result.ok and result.output == "ran ls"
        assert "ran ls" in await fleet.read("bd-42")

        hung = await fleet.exec("bd-42", "sleep 100", timeout=0.01)
        assert hung.timed_out
        assert hung.exit_code is None

    asyncio.run(scenario())


def test_commands_never_reach_dead_pane(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        worker = await fleet.spawn_worker("bd-42", subscribe=False)
        terminal.kill_out_of_band(worker.primary_pane)
        with pytest.raises(DeadWorker):
            await fleet.send("bd-42", "hello")
        assert await fleet.list_workers() == []
        assert not any(call[0] == "send_text" for call in terminal.calls)

    asyncio.run(scenario())


def test_batch_refills_when_events_complete_workers(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        batch_id = await fleet.submit_batch(["t1", "t2", "t3"], 2)
        report = await fleet.batch_status(batch_id)
        assert report.running == 2
        assert report.queued == 1
        assert fleet.events.subscribed == ["t1", "t2"]

        await fleet.events.process_event(Event(worker_id="t1", kind="completion"))
        report = await fleet.batch_status(batch_id)
        assert report.batch.members["t1"].status == MemberStatus.COMPLETED
        assert report.batch.members["t3"].status == MemberStatus.RUNNING
        assert (await fleet.registry.get("t1")).status == WorkerStatus.COMPLETED

        await fleet.events.process_event(Event(worker_id="t2", kind="error"))
        await fleet.events.process_event(Event(worker_id="t3", kind="session-end"))
        report = await fleet.batch_status(batch_id)
        assert report.batch.status == BatchStatus.PARTIALLY_BLOCKED
        assert (await fleet.summary())["batches"]["open"] == []

        await fleet.close()
        assert fleet.events.subscribed == []

    asyncio.run(scenario())


def test_hard_cancel_kills_batch_workers(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        batch_id = await fleet.submit_pattern("bd-*", ["bd-1", "bd-2", "ops-9"], 1)
        report = await fleet.cancel_batch(batch_id, hard=True)
        assert report.batch.status == BatchStatus.CANCELLED
        assert report.cancelled == 2
        assert await fleet.list_workers() == []
        await fleet.close()

    asyncio.run(scenario())


def test_evaluate_approval_uses_repo_and_task_policy(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    (repo / ".panefleet").mkdir(parents=True)
    (repo / ".panefleet" / "auto-approve.yaml").write_text("allow: [Read]\n", encoding="utf-8")
    task_file = tmp_path / "bd-42.md"
    task_file.write_text("## Auto-Approve\n- bash: \"^npm test\"\n", encoding="utf-8")

    terminal = FakeTerminal()
    settings = _settings(tmp_path)
    fleet = Fleet(
        settings,
        terminal,
        worker_store=MemoryStore(),
        batch_store=MemoryStore(),
        event_source=JsonlEventSource(tmp_path / "events"),
        policy_loader=PolicyLoader(tmp_path / "state" / "auto-approve.yaml"),
    )

    async def scenario():
        worker = await fleet.spawn_worker("bd-42", task_file=str(task_file), subscribe=False)
        await fleet.subscribe("bd-42")
        await fleet.events.process_event(
            Event(worker_id="bd-42", kind="approval-request", tool_name="Bash", tool_input={"command": "npm test"})
        )
        decision = await fleet.evaluate_approval("bd-42")
        state = fleet.worker_state("bd-42")
        await fleet.close()
        return worker, decision, state

    worker, decision, state = asyncio.run(scenario())
    assert decision.action == ApprovalAction.ALLOW
    assert decision.rule.source == str(task_file)
    assert terminal.keys_sent(worker.primary_pane)[-1] == "Enter"
    assert state.pending_prompt is None
    assert [entry.action for entry in fleet.audit.entries()] == [ApprovalAction.ALLOW]
    assert fleet.audit.path == repo / ".panefleet" / "audit.jsonl"


def test_register_and_deregister_existing_pane(tmp_path: Path) -> None:
    terminal = FakeTerminal()
    fleet = _fleet(tmp_path, terminal)

    async def scenario() -> None:
        info = await terminal.create_session("genie")
        other = await terminal.create_window("genie", "side")
        worker = await fleet.register_worker("manual", info.pane, "genie", "bd-9")
        assert worker.task_ref == "bd-9"
        assert [w.id for w in await fleet.list_workers("bd-9")] == ["manual"]
        assert await fleet.list_workers("bd-10") == []
        assert await fleet.add_sub_pane("manual", other.pane) == 1
        assert await fleet.deregister("manual") is True
        assert await fleet.deregister("manual") is False
        assert await terminal.is_pane_live(info.pane)

    asyncio.run(scenario())
