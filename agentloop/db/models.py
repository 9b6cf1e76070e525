"""
Data models (dataclasses) for AgentLoop.
These are plain Python objects used across the DB, MCP, and API layers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class Message:
    id: str
    from_agent: str      # agent id or agent name
    to_agent: str        # agent id or agent name (the accountable recipient)
    msg_type: str        # handoff | update | request | fyi
    content: str
    status_code: int     # MessageStatus ordinal
    created_at: datetime
    seen_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None
    acted_at: Optional[datetime] = None
    reported_at: Optional[datetime] = None
    expected_reply_by: Optional[datetime] = None
    expected_action_by: Optional[datetime] = None
    expected_report_by: Optional[datetime] = None
    loop_broken: bool = False
    loop_broken_reason: Optional[str] = None
    linked_task_id: Optional[str] = None
    final_report: Optional[str] = None


@dataclass
class Alert:
    id: str
    message_id: str
    agent_name: str      # accountable recipient
    alert_type: str      # reply_overdue | action_overdue | report_overdue | loop_broken
    severity: str        # warning | critical
    status: str          # active | escalated | resolved
    escalated_to: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in ("active", "escalated")


@dataclass
class AgentInfo:
    id: str
    name: str
    description: str
    registered_at: datetime


@dataclass
class Event:
    """
    Transient notification row used to fan-out SSE events to subscribers.
    Rows are written after each committed mutation and pruned by the scan loop.
    """
    id: int
    event_type: str      # msg.new | loop.* | alert.created | alert.resolved | scan.completed
    message_id: Optional[str]
    payload: str         # JSON string
    created_at: datetime
