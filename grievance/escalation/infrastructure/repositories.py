"""
Escalation Infrastructure Repositories
======================================

Concrete implementations of the store interfaces using SQLAlchemy.

Every write runs inside a savepoint so that one failed statement does
not poison the surrounding transaction; the tick keeps working on the
remaining issues in the same session.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grievance.config import PRIORITY_ORDER, TERMINAL_STATUSES
from grievance.core import RepositoryException
from grievance.escalation.application.services import (
    IAssigneeDirectory,
    IAuditRepository,
    IIssueRepository,
    TICK_ORDER,
)
from grievance.escalation.domain import AssigneeCandidate, AuditEntry, Issue
from grievance.escalation.infrastructure.models import (
    AuditEntryModel,
    DashboardUserModel,
    IssueModel,
)

# Columns the engine is allowed to write
WRITABLE_FIELDS = {
    "priority", "status", "assigned_to", "escalation_level", "escalation_count",
    "escalated_at", "reopened_at", "closed_at", "previously_closed_at",
}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; stored values are UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _issue_to_domain(model: IssueModel) -> Issue:
    return Issue(
        id=model.id,
        priority=model.priority,
        status=model.status,
        created_at=_aware(model.created_at),
        updated_at=_aware(model.updated_at),
        closed_at=_aware(model.closed_at),
        escalated_at=_aware(model.escalated_at),
        reopened_at=_aware(model.reopened_at),
        escalation_level=model.escalation_level,
        escalation_count=model.escalation_count,
        assigned_to=model.assigned_to,
        reporter_id=model.reporter_id,
        city=model.city,
        cluster=model.cluster,
        description=model.description or "",
        previously_closed_at=[
            _aware(datetime.fromisoformat(value)) for value in (model.previously_closed_at or [])
        ],
    )


def _audit_to_domain(model: AuditEntryModel) -> AuditEntry:
    return AuditEntry(
        id=str(model.id),
        issue_id=model.issue_id,
        actor_id=model.actor_id,
        action=model.action,
        previous_status=model.previous_status,
        new_status=model.new_status,
        details=dict(model.details or {}),
        created_at=_aware(model.created_at),
    )


class SQLAlchemyIssueRepository(IIssueRepository):
    """
    SQLAlchemy implementation of the issue store.

    Handles reads and conditional single-row updates of issues.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    @staticmethod
    def _order_clauses(order_by: Sequence[str]) -> List[Any]:
        rank = case(
            {priority: index for index, priority in enumerate(PRIORITY_ORDER)},
            value=IssueModel.priority,
            else_=-1
        )
        columns = {
            "priority": rank,
            "created_at": IssueModel.created_at,
            "id": IssueModel.id,
        }

        clauses = []
        for key in order_by:
            descending = key.startswith("-")
            column = columns.get(key.lstrip("-"))
            if column is None:
                raise RepositoryException(f"Unsupported ordering: {key}")
            clauses.append(column.desc() if descending else column.asc())
        clauses.append(IssueModel.id.asc())
        return clauses

    async def find_open_issues(self, order_by: Sequence[str] = TICK_ORDER) -> List[Issue]:
        """Get every open issue in the requested order."""
        stmt = (
            select(IssueModel)
            .where(IssueModel.status.notin_(TERMINAL_STATUSES))
            .order_by(*self._order_clauses(order_by))
            .execution_options(populate_existing=True)
        )
        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load open issues: {e}") from e
        return [_issue_to_domain(model) for model in result.scalars().all()]

    async def get_by_id(self, issue_id: int) -> Optional[Issue]:
        """Get issue by ID."""
        stmt = (
            select(IssueModel)
            .where(IssueModel.id == issue_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return _issue_to_domain(model) if model else None

    async def update_issue(
        self,
        issue_id: int,
        fields: Dict[str, Any],
        require_open: bool = True
    ) -> bool:
        """
        Update one issue row.

        With `require_open` the row is only touched while its status is not
        resolved or closed; a concurrent closure makes this return False.
        """
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise RepositoryException(f"Fields not writable: {sorted(unknown)}")

        values = dict(fields)
        if "previously_closed_at" in values:
            values["previously_closed_at"] = [
                _aware(value).isoformat() for value in values["previously_closed_at"]
            ]

        stmt = update(IssueModel).where(IssueModel.id == issue_id).values(**values)
        if require_open:
            stmt = stmt.where(IssueModel.status.notin_(TERMINAL_STATUSES))

        try:
            async with self._session.begin_nested():
                result = await self._session.execute(
                    stmt.execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to update issue {issue_id}: {e}") from e

        return result.rowcount > 0

    async def list_issues(self, filters: Dict[str, Any]) -> List[Issue]:
        """
        List issues with filters, oldest first.

        Supported filters: priority, city, cluster, status (value or list),
        assigned_to, open_only, start_date and end_date on created_at.
        """
        conditions = []
        if "priority" in filters:
            conditions.append(IssueModel.priority == filters["priority"])
        if "city" in filters:
            conditions.append(IssueModel.city == filters["city"])
        if "cluster" in filters:
            conditions.append(IssueModel.cluster == filters["cluster"])
        if "assigned_to" in filters:
            conditions.append(IssueModel.assigned_to == filters["assigned_to"])
        if "status" in filters:
            status = filters["status"]
            if isinstance(status, (list, tuple, set)):
                conditions.append(IssueModel.status.in_(list(status)))
            else:
                conditions.append(IssueModel.status == status)
        if filters.get("open_only"):
            conditions.append(IssueModel.status.notin_(TERMINAL_STATUSES))
        if filters.get("start_date") is not None:
            conditions.append(IssueModel.created_at >= filters["start_date"])
        if filters.get("end_date") is not None:
            conditions.append(IssueModel.created_at <= filters["end_date"])

        stmt = select(IssueModel).execution_options(populate_existing=True)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        stmt = stmt.order_by(IssueModel.created_at.asc(), IssueModel.id.asc())

        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to list issues: {e}") from e
        return [_issue_to_domain(model) for model in result.scalars().all()]


class SQLAlchemyAssigneeDirectory(IAssigneeDirectory):
    """Reads active dashboard users with their live issue counts."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_by_role(
        self,
        roles: Sequence[str],
        exclude_closed: bool = True
    ) -> List[AssigneeCandidate]:
        join_on = IssueModel.assigned_to == DashboardUserModel.id
        if exclude_closed:
            join_on = and_(join_on, IssueModel.status.notin_(TERMINAL_STATUSES))

        stmt = (
            select(DashboardUserModel, func.count(IssueModel.id).label("open_count"))
            .outerjoin(IssueModel, join_on)
            .where(
                DashboardUserModel.role.in_(list(roles)),
                DashboardUserModel.is_active.is_(True)
            )
            .group_by(DashboardUserModel.id)
            .order_by(DashboardUserModel.id)
        )

        try:
            result = await self._session.execute(stmt)
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to load assignees: {e}") from e

        return [
            AssigneeCandidate(
                id=user.id,
                name=user.name,
                role=user.role,
                open_issue_count=count,
                city=user.city,
                cluster=user.cluster,
            )
            for user, count in result.all()
        ]


class SQLAlchemyAuditRepository(IAuditRepository):
    """
    SQLAlchemy implementation of the audit store.

    Only inserts and reads; there is no update or delete path.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, entry: AuditEntry) -> None:
        model = AuditEntryModel(
            issue_id=entry.issue_id,
            actor_id=entry.actor_id,
            action=entry.action,
            previous_status=entry.previous_status,
            new_status=entry.new_status,
            details=dict(entry.details),
            created_at=entry.created_at,
        )
        if entry.id:
            model.id = UUID(entry.id)
        try:
            async with self._session.begin_nested():
                self._session.add(model)
                await self._session.flush()
        except SQLAlchemyError as e:
            raise RepositoryException(f"Failed to append audit entry: {e}") from e

    async def _list(self, condition: Any, limit: int) -> List[AuditEntry]:
        stmt = (
            select(AuditEntryModel)
            .where(condition)
            .order_by(AuditEntryModel.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [_audit_to_domain(model) for model in result.scalars().all()]

    async def list_for_issue(self, issue_id: int, limit: int) -> List[AuditEntry]:
        return await self._list(AuditEntryModel.issue_id == issue_id, limit)

    async def list_for_actor(self, actor_id: str, limit: int) -> List[AuditEntry]:
        return await self._list(AuditEntryModel.actor_id == actor_id, limit)
