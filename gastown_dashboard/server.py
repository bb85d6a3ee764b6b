"""Starlette application: REST over the control plane plus the live feeds."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from . import __version__
from .config import DashboardConfig
from .control import ControlPlaneRunner, TownClient, TownResult
from .realtime import (
    BroadcastHub,
    EventLogTailer,
    PeekLauncher,
    SessionMultiplexer,
    SnapshotPoller,
    SubprocessPeekLauncher,
    WebSocketConnection,
    read_event_history,
)

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 50
DEFAULT_LOG_LINES = 50
WS_POLICY_VIOLATION = 1008


class _BadRequest(Exception):
    pass


def _client(request: Request) -> TownClient:
    return request.app.state.client


def _fail(result: TownResult, **extra: Any) -> JSONResponse:
    return JSONResponse(
        {"error": result.error, "stderr": result.stderr, **extra}, status_code=500
    )


def _data_or_fail(result: TownResult) -> JSONResponse:
    if not result.success:
        return _fail(result)
    return JSONResponse(result.data)


def _output_or_fail(result: TownResult, **extra: Any) -> JSONResponse:
    if not result.success:
        return _fail(result)
    return JSONResponse({**extra, "output": result.output})


async def _body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise _BadRequest(f"invalid JSON body: {exc.msg}") from exc
    if not isinstance(body, dict):
        raise _BadRequest("JSON body must be an object")
    return body


def _require(body: dict[str, Any], *names: str) -> list[Any]:
    values = [body.get(name) for name in names]
    if any(value in (None, "", []) for value in values):
        raise _BadRequest(f"{', '.join(names)} required")
    return values


def _int(value: Any, name: str, default: int) -> int:
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise _BadRequest(f"{name} must be an integer") from exc


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=400)


# -- status & rigs --------------------------------------------------------


async def health(request: Request) -> JSONResponse:
    return JSONResponse(
        {
            "status": "ok",
            "version": __version__,
            "feedClients": request.app.state.hub.connection_count,
            "peekSessions": request.app.state.sessions.active_keys,
        }
    )


async def status(request: Request) -> JSONResponse:
    return JSONResponse(await _client(request).town_status())


async def rigs(request: Request) -> JSONResponse:
    result = await _client(request).list_rigs()
    if not result.success:
        return _fail(result)
    return JSONResponse({"rigs": result.data})


async def rig_polecats(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).list_polecats(request.path_params["rig"]))


# -- convoys --------------------------------------------------------------


async def convoys(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).list_convoys())


async def convoy_detail(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).convoy_status(request.path_params["convoy_id"]))


async def convoy_create(request: Request) -> JSONResponse:
    body = await _body(request)
    title, issues = _require(body, "title", "issues")
    if isinstance(issues, str):
        issues = issues.split()
    return _data_or_fail(await _client(request).create_convoy(str(title), [str(i) for i in issues]))


async def convoy_close(request: Request) -> JSONResponse:
    convoy_id = request.path_params["convoy_id"]
    result = await _client(request).close_convoy(convoy_id)
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "id": convoy_id})


async def convoy_track(request: Request) -> JSONResponse:
    convoy_id = request.path_params["convoy_id"]
    (issue_id,) = _require(await _body(request), "issueId")
    result = await _client(request).track_issue(convoy_id, str(issue_id))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "convoyId": convoy_id, "issueId": issue_id})


# -- issues ---------------------------------------------------------------


async def issues(request: Request) -> JSONResponse:
    params = request.query_params
    return _data_or_fail(
        await _client(request).list_issues(
            status=params.get("status"),
            issue_type=params.get("type"),
            assignee=params.get("assignee"),
        )
    )


async def issues_ready(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).ready_issues())


async def issue_detail(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).show_issue(request.path_params["issue_id"]))


async def issue_create(request: Request) -> JSONResponse:
    body = await _body(request)
    (title,) = _require(body, "title")
    return _data_or_fail(
        await _client(request).create_issue(
            str(title),
            issue_type=str(body.get("type") or "task"),
            priority=_int(body.get("priority"), "priority", 2),
            description=body.get("description"),
        )
    )


async def issue_update(request: Request) -> JSONResponse:
    body = await _body(request)
    priority = body.get("priority")
    return _data_or_fail(
        await _client(request).update_issue(
            request.path_params["issue_id"],
            status=body.get("status"),
            assignee=body.get("assignee"),
            priority=None if priority is None else _int(priority, "priority", 2),
        )
    )


async def issue_close(request: Request) -> JSONResponse:
    body = await _body(request)
    result = await _client(request).close_issue(
        request.path_params["issue_id"], reason=body.get("reason")
    )
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True})


# -- mail -----------------------------------------------------------------


async def mail_inbox(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).inbox())


async def mail_read(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).read_mail(request.path_params["message_id"]))


async def mail_send(request: Request) -> JSONResponse:
    to, subject, body_text = _require(await _body(request), "to", "subject", "body")
    result = await _client(request).send_mail(str(to), str(subject), str(body_text))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True})


# -- agents & crew --------------------------------------------------------


async def agents(request: Request) -> JSONResponse:
    result = await _client(request).list_agents()
    if not result.success:
        return _fail(result)
    return JSONResponse({"agents": result.data})


async def agent_state(request: Request) -> JSONResponse:
    name = request.path_params["name"]
    if request.method == "PUT":
        (state,) = _require(await _body(request), "state")
        result = await _client(request).set_agent_state(name, str(state))
        if not result.success:
            return _fail(result)
        return JSONResponse({"success": True, "name": name, "state": state})

    result = await _client(request).agent_state(name)
    if not result.success:
        return _fail(result)
    return JSONResponse({"name": name, "state": result.data})


async def _control_agent(request: Request, action: str) -> JSONResponse:
    name = request.path_params["name"]
    body = await _body(request)
    result = await _client(request).control_agent(name, action, rig=body.get("rig"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "agent": name, "output": result.output})


async def agent_start(request: Request) -> JSONResponse:
    return await _control_agent(request, "start")


async def agent_stop(request: Request) -> JSONResponse:
    return await _control_agent(request, "stop")


async def agent_restart(request: Request) -> JSONResponse:
    return await _control_agent(request, "restart")


async def agent_logs(request: Request) -> JSONResponse:
    params = request.query_params
    lines = _int(params.get("lines"), "lines", DEFAULT_LOG_LINES)
    if lines < 1:
        raise _BadRequest("lines must be positive")
    try:
        result = await _client(request).agent_logs(
            request.path_params["name"], lines=lines, rig=params.get("rig")
        )
    except ValueError as exc:
        raise _BadRequest(str(exc)) from exc
    if not result.success:
        return _fail(result)
    return JSONResponse(result.data)


async def agent_hook(request: Request) -> JSONResponse:
    return _data_or_fail(await _client(request).agent_hook(request.path_params["name"]))


async def crew(request: Request) -> JSONResponse:
    rig = request.query_params.get("rig")
    result = await _client(request).list_crew(rig)
    if not result.success:
        return _fail(result, rig=rig)
    return JSONResponse({"crews": result.data, "rig": rig or "all", "raw": result.output})


async def crew_add(request: Request) -> JSONResponse:
    body = await _body(request)
    (name,) = _require(body, "name")
    result = await _client(request).add_crew(str(name), rig=body.get("rig"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "name": name, "output": result.output})


async def crew_start(request: Request) -> JSONResponse:
    name = request.path_params["name"]
    body = await _body(request)
    result = await _client(request).start_crew(name, rig=body.get("rig"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "name": name, "output": result.output})


async def crew_status(request: Request) -> JSONResponse:
    name = request.path_params["name"]
    result = await _client(request).crew_status(name, rig=request.query_params.get("rig"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"name": name, "output": result.output})


async def crew_restart(request: Request) -> JSONResponse:
    name = request.path_params["name"]
    result = await _client(request).restart_crew(name, rig=request.query_params.get("rig"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "name": name, "output": result.output})


async def crew_remove(request: Request) -> JSONResponse:
    name = request.path_params["name"]
    result = await _client(request).remove_crew(name, rig=request.query_params.get("rig"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "name": name})


# -- dispatch -------------------------------------------------------------


async def nudge(request: Request) -> JSONResponse:
    target, message = _require(await _body(request), "target", "message")
    result = await _client(request).nudge(str(target), str(message))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "target": target, "output": result.output})


async def sling(request: Request) -> JSONResponse:
    body = await _body(request)
    (issue,) = _require(body, "issue")
    target = body.get("rig") or body.get("target")
    result = await _client(request).sling(
        str(issue), target=target, message=body.get("message"), naked=bool(body.get("naked"))
    )
    if not result.success:
        return _fail(result)
    return JSONResponse(
        {"success": True, "issue": issue, "rig": target or "self", "output": result.output}
    )


async def handoff(request: Request) -> JSONResponse:
    body = await _body(request)
    result = await _client(request).handoff(
        message=body.get("message"), bead_id=body.get("beadId")
    )
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "output": result.output})


async def hook(request: Request) -> JSONResponse:
    return JSONResponse((await _client(request).hook_status()).data)


async def hook_attach(request: Request) -> JSONResponse:
    body = await _body(request)
    (bead_id,) = _require(body, "beadId")
    result = await _client(request).attach_hook(str(bead_id), subject=body.get("subject"))
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "beadId": bead_id, "output": result.output})


async def hook_detach(request: Request) -> JSONResponse:
    result = await _client(request).unsling()
    if not result.success:
        return _fail(result)
    return JSONResponse({"success": True, "output": result.output})


async def mol_status(request: Request) -> JSONResponse:
    return _output_or_fail(await _client(request).mol_status())


async def mol_current(request: Request) -> JSONResponse:
    return _output_or_fail(await _client(request).mol_current())


async def mol_progress(request: Request) -> JSONResponse:
    return _output_or_fail(await _client(request).mol_progress())


async def mol_step_done(request: Request) -> JSONResponse:
    return _output_or_fail(await _client(request).mol_step_done(), success=True)


async def mol_attach(request: Request) -> JSONResponse:
    (mol_id,) = _require(await _body(request), "molId")
    result = await _client(request).mol_attach(str(mol_id))
    return _output_or_fail(result, success=True, molId=mol_id)


async def mol_detach(request: Request) -> JSONResponse:
    return _output_or_fail(await _client(request).mol_detach(), success=True)


async def formulas(request: Request) -> JSONResponse:
    result = await _client(request).list_formulas()
    if not result.success:
        return JSONResponse({"formulas": [], "raw": result.error or ""})
    return JSONResponse({"formulas": result.data, "raw": result.output})


async def formula_pour(request: Request) -> JSONResponse:
    formula = request.path_params["formula"]
    body = await _body(request)
    params = body.get("params")
    if params is not None and not isinstance(params, dict):
        raise _BadRequest("params must be an object")
    result = await _client(request).pour_formula(formula, target=body.get("target"), params=params)
    return _output_or_fail(result, success=True, formula=formula)


async def work_start(request: Request) -> JSONResponse:
    body = await _body(request)
    (issue,) = _require(body, "issue")
    target = body.get("target")
    result = await _client(request).sling(str(issue), target=target)
    if not result.success:
        return _fail(result)
    return JSONResponse(
        {"success": True, "issue": issue, "target": target or "self", "output": result.output}
    )


async def work_quick(request: Request) -> JSONResponse:
    body = await _body(request)
    (title,) = _require(body, "title")
    result = await _client(request).quick_create_and_sling(
        str(title),
        description=body.get("description"),
        issue_type=str(body.get("type") or "task"),
        priority=_int(body.get("priority"), "priority", 2),
        target=body.get("rig") or body.get("target"),
    )
    if not result.success:
        return _fail(result, raw=result.output)
    return JSONResponse({"success": True, **result.data})


# -- events ---------------------------------------------------------------


async def events(request: Request) -> JSONResponse:
    params = request.query_params
    limit = _int(params.get("limit"), "limit", DEFAULT_EVENT_LIMIT)
    config: DashboardConfig = request.app.state.config
    try:
        records = await asyncio.to_thread(
            read_event_history, config.events_file, limit, params.get("type")
        )
    except OSError as exc:
        return JSONResponse({"events": [], "error": str(exc)})
    return JSONResponse({"events": records})


# -- websockets -----------------------------------------------------------


async def feed_socket(websocket: WebSocket) -> None:
    """System feed: status on connect, then convoys and events."""
    hub: BroadcastHub = websocket.app.state.hub
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    writer = asyncio.create_task(connection.run_writer())
    try:
        await hub.subscribe(connection)
        await connection.receive_until_closed()
    finally:
        connection.mark_closed()
        hub.unsubscribe(connection)
        await writer


async def peek_socket(websocket: WebSocket) -> None:
    """Live output of one agent, shared with every other viewer of it."""
    sessions: SessionMultiplexer = websocket.app.state.sessions
    # The ASGI server has already percent-decoded the path.
    key = websocket.path_params["agent"]
    if not key.strip():
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    writer = asyncio.create_task(connection.run_writer())
    try:
        await sessions.attach(key, connection)
        await connection.receive_until_closed()
    finally:
        connection.mark_closed()
        sessions.detach(key, connection)
        await writer


# -- application ----------------------------------------------------------

routes = [
    Route("/health", health, methods=["GET"]),
    Route("/api/status", status, methods=["GET"]),
    Route("/api/rigs", rigs, methods=["GET"]),
    Route("/api/rigs/{rig}/polecats", rig_polecats, methods=["GET"]),
    Route("/api/convoys", convoys, methods=["GET"]),
    Route("/api/convoys", convoy_create, methods=["POST"]),
    Route("/api/convoys/{convoy_id}", convoy_detail, methods=["GET"]),
    Route("/api/convoys/{convoy_id}/close", convoy_close, methods=["POST"]),
    Route("/api/convoys/{convoy_id}/track", convoy_track, methods=["POST"]),
    Route("/api/issues", issues, methods=["GET"]),
    Route("/api/issues", issue_create, methods=["POST"]),
    Route("/api/issues/ready", issues_ready, methods=["GET"]),
    Route("/api/issues/{issue_id}", issue_detail, methods=["GET"]),
    Route("/api/issues/{issue_id}", issue_update, methods=["PATCH"]),
    Route("/api/issues/{issue_id}/close", issue_close, methods=["POST"]),
    Route("/api/mail/inbox", mail_inbox, methods=["GET"]),
    Route("/api/mail", mail_send, methods=["POST"]),
    Route("/api/mail/{message_id}", mail_read, methods=["GET"]),
    Route("/api/agents", agents, methods=["GET"]),
    Route("/api/agents/{name:path}/state", agent_state, methods=["GET", "PUT"]),
    Route("/api/agents/{name:path}/start", agent_start, methods=["POST"]),
    Route("/api/agents/{name:path}/stop", agent_stop, methods=["POST"]),
    Route("/api/agents/{name:path}/restart", agent_restart, methods=["POST"]),
    Route("/api/agents/{name:path}/logs", agent_logs, methods=["GET"]),
    Route("/api/agents/{name:path}/hook", agent_hook, methods=["GET"]),
    Route("/api/crew", crew, methods=["GET"]),
    Route("/api/crew", crew_add, methods=["POST"]),
    Route("/api/crew/{name}", crew_remove, methods=["DELETE"]),
    Route("/api/crew/{name}/start", crew_start, methods=["POST"]),
    Route("/api/crew/{name}/status", crew_status, methods=["GET"]),
    Route("/api/crew/{name}/restart", crew_restart, methods=["POST"]),
    Route("/api/nudge", nudge, methods=["POST"]),
    Route("/api/sling", sling, methods=["POST"]),
    Route("/api/handoff", handoff, methods=["POST"]),
    Route("/api/hook", hook, methods=["GET"]),
    Route("/api/hook", hook_attach, methods=["POST"]),
    Route("/api/hook", hook_detach, methods=["DELETE"]),
    Route("/api/mol/status", mol_status, methods=["GET"]),
    Route("/api/mol/current", mol_current, methods=["GET"]),
    Route("/api/mol/progress", mol_progress, methods=["GET"]),
    Route("/api/mol/step/done", mol_step_done, methods=["POST"]),
    Route("/api/mol/attach", mol_attach, methods=["POST"]),
    Route("/api/mol/detach", mol_detach, methods=["POST"]),
    Route("/api/formulas", formulas, methods=["GET"]),
    Route("/api/formulas/{formula}/pour", formula_pour, methods=["POST"]),
    Route("/api/work/start", work_start, methods=["POST"]),
    Route("/api/work/quick", work_quick, methods=["POST"]),
    Route("/api/events", events, methods=["GET"]),
    WebSocketRoute("/ws", feed_socket),
    WebSocketRoute("/ws/peek/{agent:path}", peek_socket),
]


def create_app(
    config: DashboardConfig | None = None,
    *,
    client: TownClient | None = None,
    launcher: PeekLauncher | None = None,
    start_feeds: bool = True,
) -> Starlette:
    """Build the dashboard application.

    ``client`` and ``launcher`` replace the control-plane access used by the
    REST routes, the status snapshot and the peek streams. With
    ``start_feeds`` false the event tailer and convoy poller are not run.
    """
    config = config or DashboardConfig.load()
    runner = ControlPlaneRunner(config)
    client = client or TownClient(runner)
    hub = BroadcastHub(snapshot_provider=client.town_status)
    sessions = SessionMultiplexer(
        launcher or SubprocessPeekLauncher(config.gt_bin, config.town_root),
        grace_period=config.peek_grace_period,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        tasks: list[asyncio.Task[None]] = []
        if start_feeds:
            tailer = EventLogTailer(config.events_file)
            poller = SnapshotPoller(runner, hub)
            tasks.append(asyncio.create_task(tailer.run(hub, config.event_poll_interval)))
            tasks.append(asyncio.create_task(poller.run(config.convoy_poll_interval)))
        logger.info("Dashboard serving town at %s", config.town_root)
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await sessions.close()

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=config.cors_origins,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
        exception_handlers={_BadRequest: _bad_request},
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.client = client
    app.state.hub = hub
    app.state.sessions = sessions
    return app
