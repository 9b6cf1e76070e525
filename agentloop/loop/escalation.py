"""
Escalation policy: breach type -> severity, initial status and escalation target.
"""
from dataclasses import dataclass
from typing import Optional

ESCALATE_PM = "pm"
ESCALATE_OWNER = "owner"


@dataclass(frozen=True)
class EscalationRule:
    severity: str        # warning | critical
    status: str          # active | escalated
    escalated_to: Optional[str]


ESCALATION_POLICY: dict[str, EscalationRule] = {
    "reply_overdue": EscalationRule(severity="warning", status="active", escalated_to=None),
    "action_overdue": EscalationRule(severity="critical", status="escalated", escalated_to=ESCALATE_PM),
    "report_overdue": EscalationRule(severity="critical", status="escalated", escalated_to=ESCALATE_OWNER),
    "loop_broken": EscalationRule(severity="critical", status="escalated", escalated_to=ESCALATE_PM),
}

ALERT_TYPES = frozenset(ESCALATION_POLICY)


def policy_for(alert_type: str) -> EscalationRule:
    try:
        return ESCALATION_POLICY[alert_type]
    except KeyError:
        raise ValueError(f"Invalid alert type '{alert_type}'. Must be one of {sorted(ALERT_TYPES)}") from None
