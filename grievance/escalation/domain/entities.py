"""
Escalation Domain Entities
===========================

Pure Python domain entities for the escalation engine.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from grievance.config import PRIORITY_ORDER, TERMINAL_STATUSES


@dataclass
class Issue:
    """
    Issue entity as seen by the escalation engine.

    The issue store owns the record; the engine only changes priority,
    escalation_level, escalation_count, escalated_at and assigned_to
    (and the reopen fields) through explicit repository calls.
    """

    id: int
    priority: str
    status: str
    created_at: datetime

    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    escalation_level: int = 0
    escalation_count: int = 0

    assigned_to: Optional[int] = None
    reporter_id: Optional[int] = None
    city: Optional[str] = None
    cluster: Optional[str] = None
    description: str = ""

    previously_closed_at: List[datetime] = field(default_factory=list)

    def __post_init__(self):
        """Validate issue on initialization."""
        if self.escalation_level < 0:
            raise ValueError("escalation_level cannot be negative")

        if self.escalation_count < 0:
            raise ValueError("escalation_count cannot be negative")

        if self.closed_at and self.closed_at < self.created_at:
            raise ValueError("closed_at cannot be before created_at")

    @property
    def is_open(self) -> bool:
        """Check if issue is still being worked on."""
        return self.status not in TERMINAL_STATUSES

    @property
    def is_terminal(self) -> bool:
        """Check if issue has been resolved or closed."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_unassigned(self) -> bool:
        return self.assigned_to is None

    @property
    def escalation_anchor(self) -> datetime:
        """Instant the escalation clock runs from."""
        return self.escalated_at or self.reopened_at or self.created_at

    def with_changes(self, **changes: Any) -> "Issue":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and notification payloads."""
        return {
            "id": self.id,
            "priority": self.priority,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "escalated_at": self.escalated_at.isoformat() if self.escalated_at else None,
            "reopened_at": self.reopened_at.isoformat() if self.reopened_at else None,
            "escalation_level": self.escalation_level,
            "escalation_count": self.escalation_count,
            "assigned_to": self.assigned_to,
            "reporter_id": self.reporter_id,
            "city": self.city,
            "cluster": self.cluster,
        }


def priority_rank(priority: str) -> int:
    """Position of a priority in the escalation order; -1 when unknown."""
    try:
        return PRIORITY_ORDER.index(priority)
    except ValueError:
        return -1


def tick_order_key(issue: Issue) -> tuple:
    """Sort key for a tick: highest priority first, then oldest first."""
    return (-priority_rank(issue.priority), issue.created_at, issue.id)


@dataclass(frozen=True)
class AuditEntry:
    """
    Immutable record of one state-changing decision on an issue.

    Entries are appended once and never updated or deleted.
    """

    issue_id: int
    actor_id: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "details": dict(self.details),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AssigneeCandidate:
    """
    A dashboard user who could own an issue, with their live workload.

    Computed on every balancer call and never cached.
    """

    id: int
    name: str
    role: str
    open_issue_count: int
    city: Optional[str] = None
    cluster: Optional[str] = None


__all__ = [
    "Issue",
    "AuditEntry",
    "AssigneeCandidate",
    "priority_rank",
    "tick_order_key",
]
