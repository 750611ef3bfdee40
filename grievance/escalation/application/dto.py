"""
Escalation Application DTOs
===========================

Data Transfer Objects for the escalation API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


# ========== Type Aliases for Literals ==========
PriorityStr = Literal["critical", "high", "medium", "low"]
IssueStatusStr = Literal["open", "in_progress", "resolved", "closed"]
RoleStr = Literal["agent", "manager", "admin"]


# ========== Request DTOs ==========

class EscalateRequest(BaseModel):
    """Request model for a manual escalation."""
    reason: str = Field(..., min_length=1, max_length=1000, description="Why the issue is escalated")
    actor_id: str = Field(..., min_length=1, description="Dashboard user requesting the escalation")
    priority: Optional[PriorityStr] = Field(None, description="Explicit new priority")
    target_role: Optional[RoleStr] = Field(None, description="Role to reassign the issue to")


class ReopenRequest(BaseModel):
    """Request model for reopening a closed issue."""
    actor_id: str = Field(..., min_length=1, description="User reopening the issue")


class AutoAssignRequest(BaseModel):
    actor_id: str = Field(default="system", min_length=1)


class RebalanceRequest(BaseModel):
    """Request model for workload rebalancing."""
    threshold: int = Field(default=10, ge=0, description="Open issues above which a user is overloaded")
    per_assignee: int = Field(default=3, ge=1, le=50, description="Issues moved per overloaded user")
    actor_id: str = Field(default="system", min_length=1)


class MetricsQueryDTO(BaseModel):
    """Query parameters for the metrics endpoint."""
    priority: Optional[PriorityStr] = None
    city: Optional[str] = None
    cluster: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_range(self) -> "MetricsQueryDTO":
        """Ensure the date range is not inverted."""
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
        return self

    def to_filters(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ========== Response DTOs ==========

class IssueResponse(BaseModel):
    """Issue as seen by the escalation engine."""
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

    @classmethod
    def from_domain(cls, issue: Any) -> "IssueResponse":
        return cls(
            id=issue.id,
            priority=issue.priority,
            status=issue.status,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            closed_at=issue.closed_at,
            escalated_at=issue.escalated_at,
            reopened_at=issue.reopened_at,
            escalation_level=issue.escalation_level,
            escalation_count=issue.escalation_count,
            assigned_to=issue.assigned_to,
            reporter_id=issue.reporter_id,
            city=issue.city,
            cluster=issue.cluster,
        )


class AuditEntryResponse(BaseModel):
    """Response model for one audit ledger entry."""
    id: Optional[str] = None
    issue_id: int
    actor_id: str
    action: str
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_domain(cls, entry: Any) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            issue_id=entry.issue_id,
            actor_id=entry.actor_id,
            action=entry.action,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
            details=dict(entry.details),
            created_at=entry.created_at,
        )


class AuditHistoryResponse(BaseModel):
    entries: List[AuditEntryResponse]
    count: int


class TickSummaryResponse(BaseModel):
    """Response model for one escalation tick."""
    evaluated: int
    escalated: int
    skipped: int = 0
    failed: int = 0
    audit_failures: int = 0
    notification_failures: int = 0


class EscalationResponse(BaseModel):
    """Response model for manual escalation and reopen."""
    success: bool
    issue: Optional[IssueResponse] = None
    error: Optional[str] = None
    audit_failures: int = 0
    notification_failures: int = 0


class MetricsResponse(BaseModel):
    """Response model for escalation metrics."""
    total_issues: int
    total_escalations: int
    by_level: Dict[int, int]
    avg_resolution_hours: Optional[float] = Field(
        None, description="Mean calendar hours from creation to closure; null when nothing closed"
    )
    open_by_age_bucket: Dict[str, int]


class AssignmentResponse(BaseModel):
    """Response model for one assignment."""
    issue_id: int
    previous_assignee: Optional[int] = None
    assigned_to: Optional[int] = None
    assignee_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    assigned: bool = False

    @classmethod
    def from_result(cls, result: Any) -> "AssignmentResponse":
        return cls(
            issue_id=result.issue_id,
            previous_assignee=result.previous_assignee,
            assigned_to=result.assigned_to,
            assignee_name=result.assignee_name,
            roles=list(result.roles),
            assigned=result.assigned,
        )


class RebalanceResponse(BaseModel):
    """Response model for workload rebalancing."""
    overloaded_users: int
    moved: List[AssignmentResponse] = Field(default_factory=list)
