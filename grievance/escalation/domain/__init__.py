"""
Escalation Domain Layer
=======================

Contains:
- Entities: Issue, AuditEntry, AssigneeCandidate
- Value Objects: EscalationPolicy, EscalationThreshold, WorkingWindow
- Domain Services: DurationCalculator and the escalation state machine

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from grievance.escalation.domain.entities import (
    Issue,
    AuditEntry,
    AssigneeCandidate,
    priority_rank,
    tick_order_key,
)
from grievance.escalation.domain.value_objects import (
    EscalationPolicy,
    EscalationThreshold,
    WorkingWindow,
)
from grievance.escalation.domain.durations import (
    DurationCalculator,
    SLAStatus,
    AgeBucket,
    AGE_BUCKETS,
)
from grievance.escalation.domain.state_machine import (
    EscalationState,
    EscalationDecision,
    Trigger,
    UpdateIssue,
    RecordAudit,
    Reassign,
    Notify,
    Effect,
    next_priority,
    evaluate_issue,
    escalate_manually,
    reopen_issue,
)

__all__ = [
    # Entities
    "Issue",
    "AuditEntry",
    "AssigneeCandidate",
    "priority_rank",
    "tick_order_key",
    # Value Objects
    "EscalationPolicy",
    "EscalationThreshold",
    "WorkingWindow",
    # Domain Services
    "DurationCalculator",
    "SLAStatus",
    "AgeBucket",
    "AGE_BUCKETS",
    "EscalationState",
    "EscalationDecision",
    "Trigger",
    "UpdateIssue",
    "RecordAudit",
    "Reassign",
    "Notify",
    "Effect",
    "next_priority",
    "evaluate_issue",
    "escalate_manually",
    "reopen_issue",
]
