"""
Escalation Application Layer
============================

Contains:
- Services: audit ledger, workload balancer and escalation engine
- Dispatcher: applies escalation decisions against the stores
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and store interfaces,
but not on concrete infrastructure implementations.
"""

from grievance.escalation.application.dto import (
    EscalateRequest,
    ReopenRequest,
    AutoAssignRequest,
    RebalanceRequest,
    MetricsQueryDTO,
    IssueResponse,
    AuditEntryResponse,
    AuditHistoryResponse,
    TickSummaryResponse,
    EscalationResponse,
    MetricsResponse,
    AssignmentResponse,
    RebalanceResponse,
)
from grievance.escalation.application.services import (
    IIssueRepository,
    IAssigneeDirectory,
    IAuditRepository,
    INotifier,
    IEscalationPolicyProvider,
    StaticPolicyProvider,
    AuditLedger,
    WorkloadBalancer,
    EscalationEngine,
    TICK_ORDER,
)
from grievance.escalation.application.dispatcher import (
    EscalationDispatcher,
    TickSummary,
    ApplyReport,
    EscalationResult,
    AssignmentResult,
    RebalanceReport,
    ErrorCode,
)

__all__ = [
    # DTOs
    "EscalateRequest",
    "ReopenRequest",
    "AutoAssignRequest",
    "RebalanceRequest",
    "MetricsQueryDTO",
    "IssueResponse",
    "AuditEntryResponse",
    "AuditHistoryResponse",
    "TickSummaryResponse",
    "EscalationResponse",
    "MetricsResponse",
    "AssignmentResponse",
    "RebalanceResponse",
    # Store Interfaces
    "IIssueRepository",
    "IAssigneeDirectory",
    "IAuditRepository",
    "INotifier",
    "IEscalationPolicyProvider",
    "StaticPolicyProvider",
    # Services
    "AuditLedger",
    "WorkloadBalancer",
    "EscalationEngine",
    "TICK_ORDER",
    "EscalationDispatcher",
    "TickSummary",
    "ApplyReport",
    "EscalationResult",
    "AssignmentResult",
    "RebalanceReport",
    "ErrorCode",
]
