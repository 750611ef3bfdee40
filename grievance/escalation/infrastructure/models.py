"""
Escalation Infrastructure Models
================================

SQLAlchemy ORM models for the escalation module.

These are the database representations of issues, dashboard users and
the audit trail. They belong in the infrastructure layer, not the domain
layer.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from grievance.config import IssueStatus, Priority, Role
from grievance.infrastructure.database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DashboardUserModel(Base):
    """
    Database model for dashboard users who can own issues.

    Maps to the 'dashboard_users' table.
    """
    __tablename__ = "dashboard_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False, default=Role.AGENT, index=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cluster: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class IssueModel(Base):
    """
    Database model for Issue entity.

    Maps to the 'issues' table.
    """
    __tablename__ = "issues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    priority: Mapped[str] = mapped_column(String(50), nullable=False, default=Priority.MEDIUM, index=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=IssueStatus.OPEN, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Ownership
    assigned_to: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("dashboard_users.id"), nullable=True, index=True
    )
    reporter_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cluster: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Escalation tracking
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    escalated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # ISO timestamps of earlier closures
    previously_closed_at: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)


class AuditEntryModel(Base):
    """
    Database model for the append-only audit trail.

    Maps to the 'issue_audit_trail' table. Rows are inserted, never updated.
    """
    __tablename__ = "issue_audit_trail"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    issue_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    details: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now, index=True)
