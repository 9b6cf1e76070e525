"""
AgentLoop main entry point.

Starts a FastAPI HTTP server that:
  1. Mounts the MCP Server (SSE + JSON-RPC) at /mcp for agents
  2. Exposes the loop transitions, alerts and reports as a REST API
  3. Provides an SSE broadcast endpoint at /events (dashboard read model)
  4. Runs the breach scanner in the background every SCAN_INTERVAL seconds
"""
import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import StreamingResponse, JSONResponse
from mcp.server.sse import SseServerTransport
from pydantic import BaseModel

from agentloop.config import HOST, PORT, SCAN_ENABLED, SCAN_INTERVAL, EVENT_RETENTION, LOOP_VERSION, get_config_dict
from agentloop.db.database import get_db, close_db
from agentloop.db import crud
from agentloop.errors import MessageNotFound, PermissionDenied
from agentloop.loop import transitions, reporting
from agentloop.loop.scanner import run_breach_scan, breach_scan_loop
from agentloop.mcp_server import server as mcp_server

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("agentloop")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB and the breach scanner
    await get_db()
    scan_task = None
    if SCAN_ENABLED:
        scan_task = asyncio.create_task(breach_scan_loop(get_db, SCAN_INTERVAL, EVENT_RETENTION))
    logger.info(f"AgentLoop running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop the scanner, close DB
    if scan_task is not None:
        scan_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scan_task
    await close_db()


app = FastAPI(
    title="AgentLoop",
    description="Message lifecycle tracking, SLA breach detection and escalation for agent fleets.",
    version=LOOP_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(MessageNotFound)
async def _message_not_found(request: Request, exc: MessageNotFound):
    return JSONResponse(status_code=404, content={"error": str(exc), "message_id": exc.message_id})


@app.exception_handler(PermissionDenied)
async def _permission_denied(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content={"error": str(exc), "message_id": exc.message_id})


@app.exception_handler(ValueError)
async def _invalid_value(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

sse_transport = SseServerTransport("/mcp/messages")


class _SseCompletedResponse:
    """
    Sentinel returned from mcp_sse_endpoint after connect_sse() exits.

    The SSE transport has already sent the full HTTP response through
    request._send; returning a real Response would start a second one.
    """
    async def __call__(self, scope, receive, send):
        pass


@app.get("/mcp/sse")
async def mcp_sse_endpoint(request: Request):
    """MCP SSE endpoint consumed by agent MCP clients."""
    try:
        async with sse_transport.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1],
                mcp_server.create_initialization_options(),
            )
    except Exception as exc:
        # Most are normal disconnects (anyio.ClosedResourceError, CancelledError…).
        logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
    return _SseCompletedResponse()


# Raw ASGI app: the transport sends its own 202 Accepted.
app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


class _AsgiDisconnectFilter(logging.Filter):
    """Drops uvicorn 'Exception in ASGI application' noise from MCP client disconnects."""
    _NOISE = (
        "Unexpected ASGI message 'http.response.start'",
        "Expected ASGI message 'http.response.body'",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        return not any(n in record.getMessage() for n in self._NOISE)


for _ln in ("uvicorn.error", "uvicorn"):
    logging.getLogger(_ln).addFilter(_AsgiDisconnectFilter())


# ─────────────────────────────────────────────
# Public SSE broadcast (dashboard read model)
# ─────────────────────────────────────────────

@app.get("/events")
async def global_sse_stream(request: Request, after_id: int = 0):
    """
    SSE broadcast stream consumed by the dashboard.
    Polls the `events` table and fans out new rows as SSE messages; clients
    resume with ?after_id=<last seen event id>.
    """
    async def event_generator():
        db = await get_db()
        last_id = after_id
        while True:
            if await request.is_disconnected():
                break
            events = await crud.events_since(db, after_id=last_id)
            for ev in events:
                last_id = ev.id
                data = json.dumps({"type": ev.event_type, "payload": json.loads(ev.payload)})
                yield f"id: {ev.id}\nevent: {ev.event_type}\ndata: {data}\n\n"
            await asyncio.sleep(0.5)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Agents
# ─────────────────────────────────────────────

class AgentRegister(BaseModel):
    name: str
    description: str = ""


@app.post("/api/agents", status_code=201)
async def api_agent_register(body: AgentRegister):
    db = await get_db()
    a = await crud.agent_register(db, body.name, body.description)
    return {"agent_id": a.id, "name": a.name}


@app.get("/api/agents")
async def api_agents():
    db = await get_db()
    agents = await crud.agent_list(db)
    return [{"agent_id": a.id, "name": a.name, "description": a.description,
             "registered_at": a.registered_at.isoformat()} for a in agents]


# ─────────────────────────────────────────────
# Messages and loop transitions
# ─────────────────────────────────────────────

class MessageCreate(BaseModel):
    from_agent: str
    to_agent: str
    msg_type: str = "request"
    content: str
    linked_task_id: Optional[str] = None


class CallerBody(BaseModel):
    caller: str


class ActedBody(BaseModel):
    caller: str
    linked_task_id: Optional[str] = None


class ReportedBody(BaseModel):
    caller: str
    report: str


class LoopBrokenBody(BaseModel):
    reason: str


class MultipleSeenBody(BaseModel):
    message_ids: list[str]
    caller: str


class EscalateBody(BaseModel):
    reason: str
    escalate_to: Optional[str] = None


@app.post("/api/messages", status_code=201)
async def api_message_create(body: MessageCreate):
    db = await get_db()
    m = await crud.message_create(db, body.from_agent, body.to_agent, body.msg_type,
                                  body.content, body.linked_task_id)
    return {"message_id": m.id, "status": m.status_code, "created_at": m.created_at.isoformat()}


@app.post("/api/messages/seen")
async def api_mark_multiple_seen(body: MultipleSeenBody):
    db = await get_db()
    result = await transitions.mark_multiple_seen(db, body.message_ids, body.caller)
    return result.to_dict()


@app.get("/api/messages/{message_id}")
async def api_message_status(message_id: str):
    db = await get_db()
    view = await reporting.message_status(db, message_id)
    if view is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return view


@app.post("/api/messages/{message_id}/seen")
async def api_mark_seen(message_id: str, body: CallerBody):
    db = await get_db()
    result = await transitions.mark_seen(db, message_id, body.caller)
    return {"ok": True, "already_seen": result.already_seen}


@app.post("/api/messages/{message_id}/replied")
async def api_mark_replied(message_id: str):
    db = await get_db()
    result = await transitions.mark_replied(db, message_id)
    return {"ok": True, **result.to_dict()}


@app.post("/api/messages/{message_id}/acted")
async def api_mark_acted(message_id: str, body: ActedBody):
    db = await get_db()
    result = await transitions.mark_acted(db, message_id, body.caller, body.linked_task_id)
    return {"ok": True, **result.to_dict()}


@app.post("/api/messages/{message_id}/reported")
async def api_mark_reported(message_id: str, body: ReportedBody):
    db = await get_db()
    result = await transitions.mark_reported(db, message_id, body.caller, body.report)
    return {"ok": True, **result.to_dict()}


@app.post("/api/messages/{message_id}/loop-broken")
async def api_mark_loop_broken(message_id: str, body: LoopBrokenBody):
    db = await get_db()
    result = await transitions.mark_loop_broken(db, message_id, body.reason)
    return {"ok": True, **result.to_dict(),
            "alert_id": result.created_alert.id if result.created_alert else None}


@app.post("/api/messages/{message_id}/escalate")
async def api_escalate(message_id: str, body: EscalateBody):
    db = await get_db()
    result = await transitions.escalate_to_manager(db, message_id, body.reason, body.escalate_to)
    return {"ok": True, **result.to_dict()}


# ─────────────────────────────────────────────
# Alerts, scans and reports
# ─────────────────────────────────────────────

def _alert_dict(a) -> dict:
    return {"alert_id": a.id, "message_id": a.message_id, "agent_name": a.agent_name,
            "alert_type": a.alert_type, "severity": a.severity, "status": a.status,
            "escalated_to": a.escalated_to, "created_at": a.created_at.isoformat(),
            "resolved_at": a.resolved_at.isoformat() if a.resolved_at else None}


@app.get("/api/alerts")
async def api_alerts(agent_name: Optional[str] = None, alert_type: Optional[str] = None,
                     severity: Optional[str] = None, limit: int = 100):
    db = await get_db()
    alerts = await crud.alert_list_active(db, agent_name=agent_name, alert_type=alert_type,
                                          severity=severity, limit=limit)
    return [_alert_dict(a) for a in alerts]


@app.get("/api/alerts/{alert_id}")
async def api_alert(alert_id: str):
    db = await get_db()
    alert = await crud.alert_get(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return _alert_dict(alert)


@app.get("/api/messages/{message_id}/alerts")
async def api_message_alerts(message_id: str):
    db = await get_db()
    if await crud.message_get(db, message_id) is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return [_alert_dict(a) for a in await crud.alert_list_for_message(db, message_id)]


@app.post("/api/scan")
async def api_scan():
    db = await get_db()
    result = await run_breach_scan(db)
    return result.to_dict()


@app.get("/api/inbox/{agent}")
async def api_inbox(agent: str):
    db = await get_db()
    return await reporting.inbox_overview(db, agent)


@app.get("/api/outbox/{agent}")
async def api_outbox(agent: str, limit: int = 100):
    db = await get_db()
    return await reporting.outbox_overview(db, agent, limit=limit)


@app.get("/api/conversations")
async def api_conversation(agent1: str, agent2: str, limit: int = 50):
    db = await get_db()
    return await reporting.conversation_status(db, agent1, agent2, limit=limit)


@app.get("/api/compliance")
async def api_compliance(agent: Optional[str] = None, since_days: int = 7):
    db = await get_db()
    return await reporting.agent_loop_compliance(db, agent, since_days=since_days)


@app.get("/api/config")
async def api_config():
    return get_config_dict()


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok", "service": "AgentLoop", "version": LOOP_VERSION}


if __name__ == "__main__":
    uvicorn.run("agentloop.main:app", host=HOST, port=PORT, reload=True)
