from __future__ import annotations

import asyncio

import pytest

from panefleet.errors import DeadPane, DeadWorker, InvalidTarget, UnknownTarget
from panefleet.registry import MemoryStore, WorkerRegistry
from panefleet.resolver import (
    RawAddress,
    ResolvedVia,
    SessionRef,
    SessionWindowRef,
    TargetResolver,
    WorkerRef,
    WorkerSubRef,
    format_resolved_label,
    parse_target,
)
from panefleet.terminal import FakeTerminal


def _setup() -> tuple[TargetResolver, WorkerRegistry, FakeTerminal]:
    terminal = FakeTerminal()
    registry = WorkerRegistry(MemoryStore(), terminal=terminal)
    return TargetResolver(registry, terminal), registry, terminal


def test_parse_target_tiers() -> None:
    workers = {"bd-42"}
    assert parse_target("%17", workers) == RawAddress("%17")
    assert parse_target("bd-42:1", workers) == WorkerSubRef("bd-42", "1")
    assert parse_target("bd-42", workers) == WorkerRef("bd-42")
    assert parse_target("genie:OMNI", workers) == SessionWindowRef("genie", "OMNI")
    assert parse_target("genie", workers) == SessionRef("genie")
    with pytest.raises(UnknownTarget):
        parse_target("  ", workers)


def test_parse_target_worker_wins_over_session_window() -> None:
    assert parse_target("genie:OMNI", {"genie"}) == WorkerSubRef("genie", "OMNI")


def test_resolve_each_tier() -> None:
    resolver, registry, terminal = _setup()

    async def scenario() -> None:
        genie = await terminal.create_session("genie", window_name="main")
        omni = await terminal.create_window("genie", "OMNI")
        worker_pane = await terminal.create_window("genie", "bd-42")
        sub_pane = await terminal.split_pane(worker_pane.pane)
        await registry.register("bd-42", worker_pane.pane, "genie")
        await registry.add_sub_pane("bd-42", sub_pane)

        raw = await resolver.resolve(omni.pane)
        assert raw.resolved_via == ResolvedVia.RAW
        assert raw.session_name == "genie"

        primary = await resolver.resolve("bd-42")
        assert primary.resolved_via == ResolvedVia.WORKER_PRIMARY
        assert primary.pane_address == worker_pane.pane
        assert primary.worker_id == "bd-42"

        sub = await resolver.resolve("bd-42:1")
        assert sub.resolved_via == ResolvedVia.WORKER_SUBPANE
        assert sub.pane_address == sub_pane
        assert sub.sub_pane_index == 1

        zero = await resolver.resolve("bd-42:0")
        assert zero.pane_address == worker_pane.pane
        assert zero.sub_pane_index == 0

        window = await resolver.resolve("genie:OMNI")
        assert window.resolved_via == ResolvedVia.SESSION_WINDOW
        assert window.pane_address == omni.pane

        session = await resolver.resolve("genie")
        assert session.resolved_via == ResolvedVia.SESSION
        assert session.pane_address == genie.pane
        assert session.confirmed_live

    asyncio.run(scenario())


def test_sub_pane_indexing_follows_insertion_order() -> None:
    resolver, registry, terminal = _setup()

    async def scenario() -> None:
        info = await terminal.create_session("genie")
        p1 = await terminal.split_pane(info.pane)
        p2 = await terminal.split_pane(info.pane)
        await registry.register("bd-42", info.pane, "genie")
        await registry.add_sub_pane("bd-42", p1)
        await registry.add_sub_pane("bd-42", p2)

        assert (await resolver.resolve("bd-42:1")).pane_address == p1
        assert (await resolver.resolve("bd-42:2")).pane_address == p2

        with pytest.raises(UnknownTarget) as excinfo:
            await resolver.resolve("bd-42:3")
        assert "Available: 0 (primary), 1-2 (sub-panes)" in str(excinfo.value)
        assert "split_worker bd-42" in str(excinfo.value)

        with pytest.raises(InvalidTarget):
            await resolver.resolve("bd-42:abc")
        with pytest.raises(InvalidTarget):
            await resolver.resolve("bd-42:-1")

    asyncio.run(scenario())


def test_dead_primary_prunes_worker() -> None:
    resolver, registry, terminal = _setup()

    async def scenario() -> None:
        info = await terminal.create_session("genie")
        await registry.register("bd-42", info.pane, "genie")
        terminal.kill_out_of_band(info.pane)

        with pytest.raises(DeadWorker) as excinfo:
            await resolver.resolve("bd-42")
        assert excinfo.value.target == "bd-42"
        assert "deregister bd-42" in str(excinfo.value)
        assert await registry.list() == []

    asyncio.run(scenario())


def test_dead_sub_pane_is_removed_but_worker_kept() -> None:
    resolver, registry, terminal = _setup()

    async def scenario() -> None:
        info = await terminal.create_session("genie")
        split = await terminal.split_pane(info.pane)
        await registry.register("bd-42", info.pane, "genie")
        await registry.add_sub_pane("bd-42", split)
        terminal.kill_out_of_band(split)

        with pytest.raises(DeadPane):
            await resolver.resolve("bd-42:1")
        worker = await registry.get("bd-42")
        assert worker.sub_panes == []

    asyncio.run(scenario())


def test_unknown_and_dead_raw_targets() -> None:
    resolver, _, terminal = _setup()

    async def scenario() -> None:
        with pytest.raises(UnknownTarget) as excinfo:
            await resolver.resolve("nowhere")
        assert "list_workers" in str(excinfo.value)
        assert "tmux list-sessions" in str(excinfo.value)

        with pytest.raises(UnknownTarget):
            await resolver.resolve("nowhere:OMNI")

        with pytest.raises(DeadPane):
            await resolver.resolve("%99")

    asyncio.run(scenario())


def test_resolve_reads_registry_fresh_each_call() -> None:
    terminal = FakeTerminal()
    store = MemoryStore()
    registry = WorkerRegistry(store, terminal=terminal)
    other = TargetResolver(WorkerRegistry(store, terminal=terminal), terminal)

    async def scenario() -> None:
        info = await terminal.create_session("genie")
        with pytest.raises(UnknownTarget):
            await other.resolve("bd-42")
        await registry.register("bd-42", info.pane, "genie")
        assert (await other.resolve("bd-42")).resolved_via == ResolvedVia.WORKER_PRIMARY

    asyncio.run(scenario())


def test_format_resolved_label() -> None:
    resolver, registry, terminal = _setup()

    async def scenario():
        info = await terminal.create_session("genie")
        split = await terminal.split_pane(info.pane)
        await registry.register("bd-42", info.pane, "genie")
        await registry.add_sub_pane("bd-42", split)
        return info, split, await resolver.resolve("bd-42:1"), await resolver.resolve("genie")

    info, split, sub, session = asyncio.run(scenario())
    assert format_resolved_label(sub, "bd-42:1") == f"bd-42:1 (pane {split}, session genie)"
    assert format_resolved_label(session, "genie") == f"genie (pane {info.pane}, session genie)"
