"""
Escalation Infrastructure Layer
===============================

Infrastructure implementations for the escalation engine:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: policy file watcher, webhook notifier, scheduler
"""

from grievance.escalation.infrastructure.models import (
    IssueModel,
    DashboardUserModel,
    AuditEntryModel,
)
from grievance.escalation.infrastructure.repositories import (
    SQLAlchemyIssueRepository,
    SQLAlchemyAssigneeDirectory,
    SQLAlchemyAuditRepository,
)
from grievance.escalation.infrastructure.external import (
    EscalationPolicyManager,
    CircuitBreaker,
    CircuitState,
    WebhookNotifier,
    EscalationScheduler,
)

__all__ = [
    "IssueModel",
    "DashboardUserModel",
    "AuditEntryModel",
    "SQLAlchemyIssueRepository",
    "SQLAlchemyAssigneeDirectory",
    "SQLAlchemyAuditRepository",
    "EscalationPolicyManager",
    "CircuitBreaker",
    "CircuitState",
    "WebhookNotifier",
    "EscalationScheduler",
]
