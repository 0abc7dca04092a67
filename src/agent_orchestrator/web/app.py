"""Control API and live event stream for the agent orchestrator."""

import json
import queue
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from agent_orchestrator.config import get_config
from agent_orchestrator.core import agents as agents_mod
from agent_orchestrator.core import alert_rules as rules_mod
from agent_orchestrator.core import messages as messages_mod
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.core.activities import AgentTaskInput, NotificationPayload
from agent_orchestrator.core.runtime import Orchestrator
from agent_orchestrator.core.workflow import WORKFLOW_SIGNALS
from agent_orchestrator.db.engine import get_db

# Seconds between SSE keepalive comments on an idle stream.
KEEPALIVE_INTERVAL = 15.0


def _orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def _get_db(request: Request):
    return get_db(_orchestrator(request).config.db_path)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValueError("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


# ── Workflows ─────────────────────────────────────────────────────────────────


async def api_list_workflows(request: Request):
    handles = _orchestrator(request).list_workflows()
    return JSONResponse([h.to_dict() for h in handles])


async def api_start_workflow(request: Request):
    try:
        body = await _json_body(request)
        missing = [k for k in ("agent_id", "task_id", "title") if not body.get(k)]
        if missing:
            raise ValueError(f"Missing required field(s): {', '.join(missing)}")
        workflow_input = AgentTaskInput(
            agent_id=body["agent_id"],
            agent_name=body.get("agent_name") or body["agent_id"],
            task_id=body["task_id"],
            title=body["title"],
            priority=body.get("priority", "medium"),
            agent_type=body.get("agent_type"),
            parent_agent_id=body.get("parent_agent_id"),
            soul_md=body.get("soul_md"),
            skills=body.get("skills") or [],
            config=body.get("config") or {},
            project_id=body.get("project_id"),
            linear_issue_id=body.get("linear_issue_id"),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    handle = _orchestrator(request).start_workflow(workflow_input)
    return JSONResponse(handle.to_dict(), status_code=201)


async def api_get_workflow(request: Request):
    task_id = request.path_params["task_id"]
    handle = _orchestrator(request).get_workflow(task_id)
    if not handle:
        return JSONResponse({"error": "Workflow not found"}, status_code=404)
    return JSONResponse(handle.to_dict())


async def api_signal_workflow(request: Request):
    task_id = request.path_params["task_id"]
    signal = request.path_params["signal"]
    if signal not in WORKFLOW_SIGNALS:
        return JSONResponse({"error": f"Unknown signal: {signal}"}, status_code=400)

    args = []
    if signal == "unblock":
        raw = await request.body()
        if raw:
            try:
                body = json.loads(raw)
            except ValueError:
                return JSONResponse({"error": "Request body must be valid JSON"}, status_code=400)
            if isinstance(body, dict) and body.get("reason"):
                args.append(body["reason"])

    if not _orchestrator(request).signal(task_id, signal, *args):
        return JSONResponse({"error": "No running workflow for task"}, status_code=404)
    return JSONResponse({"task_id": task_id, "signal": signal, "accepted": True})


# ── Notifications ─────────────────────────────────────────────────────────────


async def api_send_notification(request: Request):
    orchestrator = _orchestrator(request)
    try:
        body = await _json_body(request)
        payload = NotificationPayload(
            type=body.get("type", ""),
            agent_id=body["agent_id"],
            task_id=body["task_id"],
            title=body.get("title", ""),
            priority=body.get("priority", "medium"),
            reason=body.get("reason"),
            project_id=body.get("project_id"),
        )
    except KeyError as e:
        return JSONResponse({"error": f"Missing required field: {e.args[0]}"}, status_code=400)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    await run_in_threadpool(orchestrator.activities.send_notification, payload)
    return JSONResponse(
        {"accepted": True, "pending": orchestrator.alerts.pending_count()},
        status_code=202,
    )


async def api_list_messages(request: Request):
    unread = request.query_params.get("unread") in ("1", "true", "yes")
    project = request.query_params.get("project")
    try:
        limit = int(request.query_params.get("limit", 50))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    with _get_db(request) as db:
        messages = messages_mod.list_messages(
            db, unread_only=unread, project_id=project, limit=limit
        )
    return JSONResponse([_message_dict(m) for m in messages])


async def api_read_message(request: Request):
    message_id = request.path_params["message_id"]
    with _get_db(request) as db:
        message = messages_mod.mark_message_read(db, message_id)
    if not message:
        return JSONResponse({"error": "Message not found"}, status_code=404)
    return JSONResponse(_message_dict(message))


async def api_list_alert_rules(request: Request):
    with _get_db(request) as db:
        rules = rules_mod.list_alert_rules(db)
    return JSONResponse([_rule_dict(r) for r in rules])


async def api_update_alert_rule(request: Request):
    rule_id = request.path_params["rule_id"]
    try:
        body = await _json_body(request)
        with _get_db(request) as db:
            if not rules_mod.get_alert_rule(db, rule_id):
                return JSONResponse({"error": "Alert rule not found"}, status_code=404)
            rule = rules_mod.update_alert_rule(
                db,
                rule_id,
                delay_ms=body.get("delay_ms"),
                channel=body.get("channel"),
                enabled=body.get("enabled"),
            )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(_rule_dict(rule))


# ── Agents & Tasks ────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    status = request.query_params.get("status")
    with _get_db(request) as db:
        agents = agents_mod.list_agents(db, status=status)
    return JSONResponse([_agent_dict(a) for a in agents])


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    with _get_db(request) as db:
        task = tasks_mod.get_agent_task(db, task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    return JSONResponse(_task_dict(task))


# ── Live events ───────────────────────────────────────────────────────────────


async def api_events(request: Request):
    """Server-sent events: every bus event as it is published."""
    bus = _orchestrator(request).bus
    subscription = bus.subscribe()

    async def stream():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    event = await run_in_threadpool(
                        subscription.get, True, KEEPALIVE_INTERVAL
                    )
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: {event.type}\ndata: {json.dumps(event.to_dict())}\n\n"
        finally:
            bus.unsubscribe(subscription)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(value):
    return value.isoformat() if value else None


def _agent_dict(a) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "type": a.type,
        "parent_agent_id": a.parent_agent_id,
        "status": a.status,
        "skills": a.skills,
        "current_task_id": a.current_task_id,
        "last_heartbeat": _iso(a.last_heartbeat),
        "created_at": _iso(a.created_at),
    }


def _task_dict(t) -> dict:
    return {
        "id": t.id,
        "agent_id": t.agent_id,
        "title": t.title,
        "status": t.status,
        "priority": t.priority,
        "project_id": t.project_id,
        "linear_issue_id": t.linear_issue_id,
        "blocked_reason": t.blocked_reason,
        "blocked_at": _iso(t.blocked_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def _message_dict(m) -> dict:
    return {
        "id": m.id,
        "type": m.type,
        "content": m.content,
        "project_id": m.project_id,
        "todo_id": m.todo_id,
        "session_id": m.session_id,
        "read": m.read,
        "created_at": _iso(m.created_at),
    }


def _rule_dict(r) -> dict:
    return {
        "id": r.id,
        "trigger": r.trigger,
        "priority_filter": r.priority_filter,
        "delay_ms": r.delay_ms,
        "channel": r.channel,
        "enabled": r.enabled,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(orchestrator: Orchestrator | None = None) -> Starlette:
    """Build the app. Without an orchestrator, one is created (and stopped) by the lifespan."""

    @asynccontextmanager
    async def lifespan(app: Starlette):
        owned = orchestrator is None
        if owned:
            app.state.orchestrator = Orchestrator(get_config())
        try:
            yield
        finally:
            if owned:
                await run_in_threadpool(app.state.orchestrator.shutdown)

    routes = [
        Route("/api/workflows", api_list_workflows, methods=["GET"]),
        Route("/api/workflows", api_start_workflow, methods=["POST"]),
        Route("/api/workflows/{task_id}", api_get_workflow, methods=["GET"]),
        Route("/api/workflows/{task_id}/signals/{signal}", api_signal_workflow, methods=["POST"]),
        Route("/api/notifications", api_send_notification, methods=["POST"]),
        Route("/api/messages", api_list_messages, methods=["GET"]),
        Route("/api/messages/{message_id:int}/read", api_read_message, methods=["POST"]),
        Route("/api/alert-rules", api_list_alert_rules, methods=["GET"]),
        Route("/api/alert-rules/{rule_id}", api_update_alert_rule, methods=["PATCH"]),
        Route("/api/agents", api_list_agents, methods=["GET"]),
        Route("/api/tasks/{task_id}", api_get_task, methods=["GET"]),
        Route("/api/events", api_events, methods=["GET"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
