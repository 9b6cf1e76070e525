"""
Tool dispatch layer for AgentLoop.
Each handler takes the shared DB connection and the raw MCP arguments and
returns JSON text content. Loop errors come back as {"error": ...} payloads
so the calling agent can read them.
"""
import json
import logging
from typing import Any

import mcp.types as types

from agentloop.db import crud
from agentloop.errors import LoopError, MessageNotFound, PermissionDenied
from agentloop.loop import transitions, reporting

logger = logging.getLogger(__name__)


def _text(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def _error(message: str, **extra: Any) -> list[types.TextContent]:
    return _text({"error": message, **extra})


async def handle_msg_send(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    msg = await crud.message_create(
        db,
        from_agent=arguments["from_agent"],
        to_agent=arguments["to_agent"],
        msg_type=arguments.get("msg_type", "request"),
        content=arguments["content"],
        linked_task_id=arguments.get("linked_task_id"),
    )
    return _text({"message_id": msg.id, "status": msg.status_code, "created_at": msg.created_at.isoformat()})

async def handle_mark_seen(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.mark_seen(db, arguments["message_id"], arguments["caller"])
    return _text({"ok": True, "already_seen": result.already_seen})

async def handle_mark_multiple_seen(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.mark_multiple_seen(db, list(arguments["message_ids"]), arguments["caller"])
    return _text(result.to_dict())

async def handle_mark_replied(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.mark_replied(db, arguments["message_id"])
    return _text({"ok": True, **result.to_dict()})

async def handle_mark_acted(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.mark_acted(
        db, arguments["message_id"], arguments["caller"], arguments.get("linked_task_id"),
    )
    return _text({"ok": True, **result.to_dict()})

async def handle_mark_reported(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.mark_reported(db, arguments["message_id"], arguments["caller"], arguments["report"])
    return _text({"ok": True, **result.to_dict()})

async def handle_mark_broken(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.mark_loop_broken(db, arguments["message_id"], arguments["reason"])
    return _text({
        "ok": True, **result.to_dict(),
        "alert_id": result.created_alert.id if result.created_alert else None,
    })

async def handle_escalate(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    result = await transitions.escalate_to_manager(
        db, arguments["message_id"], arguments["reason"], arguments.get("escalate_to"),
    )
    return _text({"ok": True, **result.to_dict()})

async def handle_loop_status(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    view = await reporting.message_status(db, arguments["message_id"])
    if view is None:
        return _error("Message not found", message_id=arguments["message_id"])
    return _text(view)

async def handle_alert_list(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    alerts = await crud.alert_list_active(
        db,
        agent_name=arguments.get("agent_name"),
        alert_type=arguments.get("alert_type"),
        severity=arguments.get("severity"),
        limit=int(arguments.get("limit", 100)),
    )
    return _text([
        {"alert_id": a.id, "message_id": a.message_id, "agent_name": a.agent_name,
         "alert_type": a.alert_type, "severity": a.severity, "status": a.status,
         "escalated_to": a.escalated_to, "created_at": a.created_at.isoformat()}
        for a in alerts
    ])

async def handle_inbox_overview(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text(await reporting.inbox_overview(db, arguments["agent"]))

async def handle_outbox_overview(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text(await reporting.outbox_overview(db, arguments["agent"], limit=int(arguments.get("limit", 100))))

async def handle_conversation_status(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text(await reporting.conversation_status(
        db, arguments["agent1"], arguments["agent2"], limit=int(arguments.get("limit", 50)),
    ))

TOOLS_DISPATCH = {
    "msg_send": handle_msg_send,
    "loop_mark_seen": handle_mark_seen,
    "loop_mark_multiple_seen": handle_mark_multiple_seen,
    "loop_mark_replied": handle_mark_replied,
    "loop_mark_acted": handle_mark_acted,
    "loop_mark_reported": handle_mark_reported,
    "loop_mark_broken": handle_mark_broken,
    "loop_escalate": handle_escalate,
    "loop_status": handle_loop_status,
    "alert_list": handle_alert_list,
    "inbox_overview": handle_inbox_overview,
    "outbox_overview": handle_outbox_overview,
    "conversation_status": handle_conversation_status,
}

async def dispatch_tool(db, name: str, arguments: dict[str, Any]) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        return _error(f"Unknown tool: {name}")
    try:
        return await handler(db, arguments)
    except MessageNotFound as e:
        return _error(str(e), code="not_found", message_id=e.message_id)
    except PermissionDenied as e:
        return _error(str(e), code="permission_denied", message_id=e.message_id)
    except LoopError as e:
        return _error(str(e))
    except KeyError as e:
        return _error(f"Missing required argument: {e.args[0]}")
    except ValueError as e:
        return _error(str(e), code="invalid_argument")
