"""
MCP Server for AgentLoop.

Registers the loop Tools, Resources, and Prompts agents use to move their
messages through seen -> replied -> acted -> reported.
Mounted onto the FastAPI app via SSE transport.
"""
import json
import logging

import mcp.types as types
from mcp.server import Server

from agentloop.db.database import get_db
from agentloop.db import crud
from agentloop.config import LOOP_VERSION, HOST, PORT, get_config_dict
from agentloop.loop.status import SLA_REPLY, SLA_ACTION, SLA_REPORT
from agentloop.tools.dispatch import dispatch_tool

logger = logging.getLogger(__name__)

# Create the MCP server instance
server = Server("AgentLoop")


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

_MESSAGE_ID = {"type": "string", "description": "ID of the message being tracked."}
_CALLER = {"type": "string", "description": "Your agent name or agent ID. Must be the message recipient."}


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="msg_send",
            description="Send a message to another agent. It starts as delivered in the recipient's inbox.",
            inputSchema={
                "type": "object",
                "properties": {
                    "from_agent": {"type": "string", "description": "Sender agent name or ID."},
                    "to_agent":   {"type": "string", "description": "Recipient agent name or ID."},
                    "msg_type":   {"type": "string", "enum": ["handoff", "update", "request", "fyi"], "default": "request"},
                    "content":    {"type": "string"},
                    "linked_task_id": {"type": "string", "description": "Optional task this message is about."},
                },
                "required": ["from_agent", "to_agent", "content"],
            },
        ),
        types.Tool(
            name="loop_mark_seen",
            description=(
                "Mark a message you received as seen. Starts the 15 minute reply SLA. "
                "Calling it again is harmless and returns already_seen=true."
            ),
            inputSchema={
                "type": "object",
                "properties": {"message_id": _MESSAGE_ID, "caller": _CALLER},
                "required": ["message_id", "caller"],
            },
        ),
        types.Tool(
            name="loop_mark_multiple_seen",
            description="Mark several received messages as seen. Failures are reported per message.",
            inputSchema={
                "type": "object",
                "properties": {
                    "message_ids": {"type": "array", "items": {"type": "string"}},
                    "caller": _CALLER,
                },
                "required": ["message_ids", "caller"],
            },
        ),
        types.Tool(
            name="loop_mark_replied",
            description="Record that the message has been replied to. Starts the 2 hour action SLA.",
            inputSchema={
                "type": "object",
                "properties": {"message_id": _MESSAGE_ID},
                "required": ["message_id"],
            },
        ),
        types.Tool(
            name="loop_mark_acted",
            description=(
                "Record that you started working on the message. Starts the 24 hour report SLA "
                "and resolves reply/action overdue alerts."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "message_id": _MESSAGE_ID,
                    "caller": _CALLER,
                    "linked_task_id": {"type": "string", "description": "Optional task created for this work."},
                },
                "required": ["message_id", "caller"],
            },
        ),
        types.Tool(
            name="loop_mark_reported",
            description="Close the loop with a final report. Resolves every open alert for the message.",
            inputSchema={
                "type": "object",
                "properties": {
                    "message_id": _MESSAGE_ID,
                    "caller": _CALLER,
                    "report": {"type": "string", "description": "What was done and the outcome."},
                },
                "required": ["message_id", "caller", "report"],
            },
        ),
        types.Tool(
            name="loop_mark_broken",
            description=(
                "Declare that this loop cannot complete (e.g. a dependency is unavailable). "
                "Stops SLA tracking for the message and escalates to the PM."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "message_id": _MESSAGE_ID,
                    "reason": {"type": "string"},
                },
                "required": ["message_id", "reason"],
            },
        ),
        types.Tool(
            name="loop_escalate",
            description=(
                "Escalate a message by hand with a critical alert. The target defaults to the PM. "
                "Only one escalation is open per message; repeating it returns the open one."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "message_id": _MESSAGE_ID,
                    "reason": {"type": "string"},
                    "escalate_to": {"type": "string", "description": "Role or agent to escalate to (default: pm)."},
                },
                "required": ["message_id", "reason"],
            },
        ),
        types.Tool(
            name="loop_status",
            description="Get the lifecycle status, stage timestamps and deadlines of a message.",
            inputSchema={
                "type": "object",
                "properties": {"message_id": _MESSAGE_ID},
                "required": ["message_id"],
            },
        ),
        types.Tool(
            name="alert_list",
            description="List open (active or escalated) loop alerts, newest first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agent_name": {"type": "string"},
                    "alert_type": {"type": "string",
                                   "enum": ["reply_overdue", "action_overdue", "report_overdue", "loop_broken"]},
                    "severity":   {"type": "string", "enum": ["warning", "critical"]},
                    "limit":      {"type": "integer", "default": 100},
                },
            },
        ),
        types.Tool(
            name="inbox_overview",
            description="Counts of unseen and unreplied messages in an agent's inbox, grouped by sender.",
            inputSchema={
                "type": "object",
                "properties": {"agent": {"type": "string"}},
                "required": ["agent"],
            },
        ),
        types.Tool(
            name="outbox_overview",
            description="Messages an agent has sent with their loop status, grouped by recipient.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agent": {"type": "string"},
                    "limit": {"type": "integer", "default": 100},
                },
                "required": ["agent"],
            },
        ),
        types.Tool(
            name="conversation_status",
            description="Messages exchanged between two agents, newest first, with their loop status.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agent1": {"type": "string"},
                    "agent2": {"type": "string"},
                    "limit":  {"type": "integer", "default": 50},
                },
                "required": ["agent1", "agent2"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[types.Content]:
    logger.debug(f"Tool call: {name}")
    db = await get_db()
    return await dispatch_tool(db, name, arguments or {})


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    return [
        types.Resource(
            uri="loop://config",
            name="Loop Configuration",
            description="SLA durations and server settings.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="loop://alerts/active",
            name="Active Alerts",
            description="All open loop alerts.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="loop://agents",
            name="Agents",
            description="Registered agents.",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    db = await get_db()
    uri_str = str(uri)

    if uri_str == "loop://config":
        return json.dumps({
            "sla_minutes": {
                "reply": SLA_REPLY.total_seconds() / 60,
                "action": SLA_ACTION.total_seconds() / 60,
                "report": SLA_REPORT.total_seconds() / 60,
            },
            "version": LOOP_VERSION,
            "endpoint": f"http://{HOST}:{PORT}",
            **get_config_dict(),
        }, indent=2)

    if uri_str == "loop://alerts/active":
        alerts = await crud.alert_list_active(db)
        return json.dumps([
            {"alert_id": a.id, "message_id": a.message_id, "agent_name": a.agent_name,
             "alert_type": a.alert_type, "severity": a.severity, "status": a.status,
             "escalated_to": a.escalated_to, "created_at": a.created_at.isoformat()}
            for a in alerts
        ], indent=2)

    if uri_str == "loop://agents":
        agents = await crud.agent_list(db)
        return json.dumps([
            {"agent_id": a.id, "name": a.name, "description": a.description}
            for a in agents
        ], indent=2)

    return f"Unknown resource URI: {uri_str}"


# ═════════════════════════════════════════════
# PROMPTS
# ═════════════════════════════════════════════

@server.list_prompts()
async def list_prompts() -> list[types.Prompt]:
    return [
        types.Prompt(
            name="close_the_loop",
            description="Instructs an agent to write the final report that closes a message loop.",
            arguments=[
                types.PromptArgument(name="request", description="The original request content.", required=True),
                types.PromptArgument(name="work_log", description="What was done.", required=False),
            ],
        ),
    ]


@server.get_prompt()
async def get_prompt(name: str, arguments: dict[str, str] | None) -> types.GetPromptResult:
    args = arguments or {}

    if name == "close_the_loop":
        log_block = f"\n\nWork log:\n{args['work_log']}" if args.get("work_log") else ""
        return types.GetPromptResult(
            description="Final loop report.",
            messages=[types.PromptMessage(
                role="user",
                content=types.TextContent(type="text", text=(
                    f"You received this request:\n\n{args.get('request', '')}{log_block}\n\n"
                    "Write a short final report: what was done, the outcome, and any follow-up. "
                    "Then call loop_mark_reported with it."
                )),
            )],
        )

    raise ValueError(f"Unknown prompt: {name}")
