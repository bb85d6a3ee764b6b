from __future__ import annotations

import asyncio
import json

import pytest

from gastown_dashboard.control.runner import InvocationResult
from gastown_dashboard.realtime.hub import BroadcastHub
from gastown_dashboard.realtime.poller import SnapshotPoller
from gastown_dashboard.realtime.protocol import ConvoysMessage, EventMessage


class FakeConnection:
    def __init__(self, conn_id: str, is_open: bool = True, raises: bool = False) -> None:
        self.id = conn_id
        self.is_open = is_open
        self.raises = raises
        self.frames: list[str] = []

    def send_text(self, data: str) -> bool:
        if self.raises:
            raise RuntimeError("socket went away")
        self.frames.append(data)
        return True

    @property
    def messages(self) -> list[dict]:
        return [json.loads(frame) for frame in self.frames]


class ScriptedRunner:
    def __init__(self, *results: InvocationResult) -> None:
        self._results = list(results)
        self.calls: list[str] = []

    async def gt(self, args: str, cwd=None) -> InvocationResult:
        self.calls.append(args)
        return self._results.pop(0)


@pytest.mark.asyncio
async def test_publish_skips_dead_connections_and_survives_send_errors() -> None:
    hub = BroadcastHub()
    live_a = FakeConnection("a")
    dead = FakeConnection("dead", is_open=False)
    broken = FakeConnection("broken", raises=True)
    live_b = FakeConnection("b")

    for conn in (live_a, dead, broken, live_b):
        await hub.subscribe(conn)

    delivered = hub.publish(EventMessage(record={"type": "sling", "id": "gt-1"}))

    assert delivered == 2
    assert live_a.messages == [{"type": "event", "data": {"type": "sling", "id": "gt-1"}}]
    assert live_b.messages == live_a.messages
    assert dead.frames == []
    # members are only removed by unsubscribe
    assert hub.connection_count == 4


@pytest.mark.asyncio
async def test_subscribe_sends_status_snapshot() -> None:
    async def snapshot() -> dict:
        return {"connected": True, "stats": {"rigCount": 1}}

    hub = BroadcastHub(snapshot_provider=snapshot)
    conn = FakeConnection("a")

    await hub.subscribe(conn)

    assert conn in hub
    assert conn.messages == [{"type": "status", "data": {"connected": True, "stats": {"rigCount": 1}}}]


@pytest.mark.asyncio
async def test_failed_snapshot_still_subscribes() -> None:
    async def snapshot() -> dict:
        raise RuntimeError("gt unavailable")

    hub = BroadcastHub(snapshot_provider=snapshot)
    conn = FakeConnection("a")

    await hub.subscribe(conn)

    assert conn in hub
    assert conn.frames == []


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent() -> None:
    hub = BroadcastHub()
    conn = FakeConnection("a")
    await hub.subscribe(conn)

    hub.unsubscribe(conn)
    hub.unsubscribe(conn)

    assert hub.connection_count == 0
    assert hub.publish(ConvoysMessage(convoys=[])) == 0


@pytest.mark.asyncio
async def test_poller_publishes_parsed_convoys() -> None:
    hub = BroadcastHub()
    conn = FakeConnection("a")
    await hub.subscribe(conn)
    runner = ScriptedRunner(InvocationResult(success=True, output='{"convoys": [{"id": "c1"}]}'))

    assert await SnapshotPoller(runner, hub).tick()

    assert runner.calls == ["convoy list --json"]
    assert conn.messages == [{"type": "convoys", "data": {"convoys": [{"id": "c1"}]}}]


@pytest.mark.asyncio
async def test_poller_skips_failed_or_unparsable_ticks() -> None:
    hub = BroadcastHub()
    conn = FakeConnection("a")
    await hub.subscribe(conn)
    runner = ScriptedRunner(
        InvocationResult(success=False, error="gt not found"),
        InvocationResult(success=True, output="No convoys yet"),
    )
    poller = SnapshotPoller(runner, hub)

    assert not await poller.tick()
    assert not await poller.tick()
    assert conn.frames == []


@pytest.mark.asyncio
async def test_poller_run_keeps_ticking_after_an_error(monkeypatch: pytest.MonkeyPatch) -> None:
    poller = SnapshotPoller(ScriptedRunner(), BroadcastHub())
    ticks = 0

    async def flaky_tick() -> bool:
        nonlocal ticks
        ticks += 1
        if ticks == 1:
            raise RuntimeError("unexpected output shape")
        return True

    monkeypatch.setattr(poller, "tick", flaky_tick)

    task = asyncio.create_task(poller.run(interval=0.01))
    for _ in range(100):
        if ticks >= 3:
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert ticks >= 3
