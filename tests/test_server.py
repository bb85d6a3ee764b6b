from __future__ import annotations

import asyncio
import json

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from gastown_dashboard.config import DashboardConfig
from gastown_dashboard.control.gastown import TownResult
from gastown_dashboard.realtime.protocol import EventMessage
from gastown_dashboard.server import create_app

STATUS = {
    "connected": True,
    "town": {"name": "gt", "path": "/town", "rigs": []},
    "stats": {"runningAgents": 0, "activeConvoys": 0, "openIssues": 0, "rigCount": 0},
}


class FakeTownClient:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    async def town_status(self) -> dict:
        return STATUS

    async def list_rigs(self) -> TownResult:
        return TownResult(success=True, data=[{"name": "gastown", "polecats": 1}])

    async def list_convoys(self) -> TownResult:
        return TownResult(success=False, error="gt: command not found", stderr="sh: gt")

    async def create_issue(self, title, issue_type="task", priority=2, description=None) -> TownResult:
        self.calls.append(("create_issue", title, issue_type, priority, description))
        return TownResult(success=True, data={"id": "gt-1", "title": title})

    async def agent_state(self, name: str) -> TownResult:
        self.calls.append(("agent_state", name))
        return TownResult(success=True, data="idle")

    async def sling(self, issue, target=None, message=None, naked=False) -> TownResult:
        self.calls.append(("sling", issue, target, message, naked))
        return TownResult(success=True, output="slung")

    async def control_agent(self, name, action, rig=None) -> TownResult:
        self.calls.append(("control_agent", name, action, rig))
        return TownResult(success=True, output=f"{action}ed")

    async def agent_logs(self, name, lines=50, rig=None) -> TownResult:
        if ".." in name:
            raise ValueError(f"log path for {name} is outside the town")
        self.calls.append(("agent_logs", name, lines, rig))
        return TownResult(success=True, data={"agent": name, "lines": lines, "content": "ok"})

    async def remove_crew(self, name, rig=None) -> TownResult:
        self.calls.append(("remove_crew", name, rig))
        return TownResult(success=False, error="no such crew", stderr="gt: joe")

    async def attach_hook(self, bead_id, subject=None) -> TownResult:
        self.calls.append(("attach_hook", bead_id, subject))
        return TownResult(success=True, output="hooked")

    async def mol_attach(self, mol_id) -> TownResult:
        self.calls.append(("mol_attach", mol_id))
        return TownResult(success=True, output="attached")

    async def pour_formula(self, formula, target=None, params=None) -> TownResult:
        self.calls.append(("pour_formula", formula, target, params))
        return TownResult(success=True, output="poured")


class FakeProcess:
    def __init__(self, pid: int, lines: list[str]) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._exited = asyncio.Event()
        for line in lines:
            self.stdout.feed_data(f"{line}\n".encode())

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.returncode = -15
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    kill = terminate


class FakeLauncher:
    def __init__(self) -> None:
        self.keys: list[str] = []

    async def __call__(self, key: str) -> FakeProcess:
        self.keys.append(key)
        return FakeProcess(pid=4242, lines=[f"peeking at {key}"])


@pytest.fixture
def town(tmp_path):
    return DashboardConfig(town_root=tmp_path, peek_grace_period=0.05)


@pytest.fixture
def fake_client():
    return FakeTownClient()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def client(town, fake_client, launcher):
    app = create_app(town, client=fake_client, launcher=launcher, start_feeds=False)
    with TestClient(app) as test_client:
        yield test_client


def test_feed_sends_status_on_connect(client) -> None:
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "status", "data": STATUS}


def test_feed_receives_published_messages(client) -> None:
    hub = client.app.state.hub
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        client.portal.call(hub.publish, EventMessage(record={"type": "sling"}))
        assert ws.receive_json() == {"type": "event", "data": {"type": "sling"}}


def test_peek_streams_output_and_shares_process(client, launcher) -> None:
    with client.websocket_connect("/ws/peek/rigA%2Fpolecats%2Fnux") as first:
        assert first.receive_json() == {
            "type": "info",
            "data": {"message": "peek session started", "session": "rigA/polecats/nux", "pid": 4242},
        }
        assert first.receive_json() == {"type": "output", "data": "peeking at rigA/polecats/nux"}

        with client.websocket_connect("/ws/peek/rigA/polecats/nux") as second:
            assert second.receive_json() == {
                "type": "info",
                "data": {"message": "joined existing stream", "session": "rigA/polecats/nux"},
            }

    assert launcher.keys == ["rigA/polecats/nux"]


def test_unknown_websocket_path_is_rejected(client) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/unknown"):
            pass


def test_status_and_health(client) -> None:
    assert client.get("/api/status").json() == STATUS

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["peekSessions"] == []


def test_rigs_and_failed_convoys(client) -> None:
    assert client.get("/api/rigs").json() == {"rigs": [{"name": "gastown", "polecats": 1}]}

    response = client.get("/api/convoys")
    assert response.status_code == 500
    assert response.json() == {"error": "gt: command not found", "stderr": "sh: gt"}


def test_issue_create_validates_and_forwards(client, fake_client) -> None:
    assert client.post("/api/issues", json={}).status_code == 400
    assert client.post("/api/issues", content=b"{nope").status_code == 400
    assert client.post("/api/issues", json={"title": "x", "priority": "high"}).status_code == 400

    response = client.post("/api/issues", json={"title": "Fix it", "type": "bug", "priority": "1"})

    assert response.status_code == 200
    assert response.json() == {"id": "gt-1", "title": "Fix it"}
    assert fake_client.calls == [("create_issue", "Fix it", "bug", 1, None)]


def test_agent_state_accepts_slashed_names(client, fake_client) -> None:
    response = client.get("/api/agents/gastown/witness/state")

    assert response.json() == {"name": "gastown/witness", "state": "idle"}
    assert fake_client.calls == [("agent_state", "gastown/witness")]


def test_sling_accepts_rig_field(client, fake_client) -> None:
    response = client.post("/api/sling", json={"issue": "gt-1", "rig": "gastown", "naked": True})

    assert response.json() == {"success": True, "issue": "gt-1", "rig": "gastown", "output": "slung"}
    assert fake_client.calls == [("sling", "gt-1", "gastown", None, True)]


def test_events_history(client, town) -> None:
    lines = [{"type": "sling", "n": 1}, {"type": "mail", "n": 2}, {"type": "sling", "n": 3}]
    town.events_file.write_text("\n".join(json.dumps(r) for r in lines) + "\n")

    assert [e["n"] for e in client.get("/api/events").json()["events"]] == [3, 2, 1]
    assert [e["n"] for e in client.get("/api/events?type=sling&limit=1").json()["events"]] == [3]
    assert client.get("/api/events?limit=abc").status_code == 400


def test_events_history_without_log(client) -> None:
    assert client.get("/api/events").json() == {"events": []}


def test_empty_peek_key_is_rejected(client, launcher) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/peek/"):
            pass

    assert launcher.keys == []


def test_agent_lifecycle_routes_pass_action_and_rig(client, fake_client) -> None:
    started = client.post("/api/agents/gastown/polecats/nux/start", json={"rig": "gastown"})
    restarted = client.post("/api/agents/mayor/restart")

    assert started.json() == {"success": True, "agent": "gastown/polecats/nux", "output": "started"}
    assert restarted.json()["agent"] == "mayor"
    assert fake_client.calls == [
        ("control_agent", "gastown/polecats/nux", "start", "gastown"),
        ("control_agent", "mayor", "restart", None),
    ]


def test_agent_logs_validates_lines_and_path(client, fake_client) -> None:
    assert client.get("/api/agents/deacon/logs?lines=0").status_code == 400
    assert client.get("/api/agents/deacon/logs?lines=ten").status_code == 400
    assert client.get("/api/agents/..%2F..%2Fetc/logs").status_code == 400

    response = client.get("/api/agents/deacon/logs?lines=5&rig=gastown")

    assert response.json() == {"agent": "deacon", "lines": 5, "content": "ok"}
    assert fake_client.calls == [("agent_logs", "deacon", 5, "gastown")]


def test_crew_remove_reports_failure(client, fake_client) -> None:
    response = client.delete("/api/crew/joe?rig=gastown")

    assert response.status_code == 500
    assert response.json() == {"error": "no such crew", "stderr": "gt: joe"}
    assert fake_client.calls == [("remove_crew", "joe", "gastown")]


def test_hook_and_molecule_attach_require_ids(client, fake_client) -> None:
    assert client.post("/api/hook", json={}).status_code == 400
    assert client.post("/api/mol/attach", json={}).status_code == 400

    hooked = client.post("/api/hook", json={"beadId": "gt-3", "subject": "review"})
    attached = client.post("/api/mol/attach", json={"molId": "mol-1"})

    assert hooked.json() == {"success": True, "beadId": "gt-3", "output": "hooked"}
    assert attached.json() == {"success": True, "molId": "mol-1", "output": "attached"}
    assert fake_client.calls == [("attach_hook", "gt-3", "review"), ("mol_attach", "mol-1")]


def test_formula_pour_forwards_params(client, fake_client) -> None:
    assert client.post("/api/formulas/release/pour", json={"params": ["v1"]}).status_code == 400

    response = client.post(
        "/api/formulas/release/pour", json={"target": "gastown", "params": {"version": "1.2"}}
    )

    assert response.json() == {"success": True, "formula": "release", "output": "poured"}
    assert fake_client.calls == [("pour_formula", "release", "gastown", {"version": "1.2"})]


def test_work_start_slings_to_target(client, fake_client) -> None:
    assert client.post("/api/work/start", json={}).status_code == 400

    response = client.post("/api/work/start", json={"issue": "gt-4"})

    assert response.json() == {"success": True, "issue": "gt-4", "target": "self", "output": "slung"}
    assert fake_client.calls == [("sling", "gt-4", None, None, False)]
