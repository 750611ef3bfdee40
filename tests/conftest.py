"""Shared fixtures: in-memory stores, a fixed clock and a dispatcher factory."""

import asyncio
import random
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from grievance.config import IssueStatus, TERMINAL_STATUSES
from grievance.core import RepositoryException
from grievance.escalation.application import (
    AuditLedger,
    EscalationDispatcher,
    EscalationEngine,
    IAssigneeDirectory,
    IAuditRepository,
    IIssueRepository,
    INotifier,
    StaticPolicyProvider,
    TICK_ORDER,
    WorkloadBalancer,
)
from grievance.escalation.domain import (
    AssigneeCandidate,
    AuditEntry,
    EscalationPolicy,
    Issue,
    tick_order_key,
)

# Monday 2024-01-15 09:00 UTC is the start of a working day.
MONDAY_9AM = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
# Tuesday 14:00: 8h on Monday plus 5h on Tuesday.
TUESDAY_2PM = datetime(2024, 1, 16, 14, 0, tzinfo=timezone.utc)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_issue(issue_id: int = 1, **overrides: Any) -> Issue:
    fields = {
        "id": issue_id,
        "priority": "high",
        "status": IssueStatus.OPEN,
        "created_at": MONDAY_9AM,
    }
    fields.update(overrides)
    return Issue(**fields)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class InMemoryIssueRepository(IIssueRepository):
    def __init__(self, issues: Sequence[Issue] = ()):
        self.issues: Dict[int, Issue] = {issue.id: issue for issue in issues}
        self.fail_updates_for: set = set()
        self.update_calls: List[Dict[str, Any]] = []

    def add(self, issue: Issue) -> Issue:
        self.issues[issue.id] = issue
        return issue

    async def find_open_issues(self, order_by: Sequence[str] = TICK_ORDER) -> List[Issue]:
        return sorted((i for i in self.issues.values() if i.is_open), key=tick_order_key)

    async def get_by_id(self, issue_id: int) -> Optional[Issue]:
        return self.issues.get(issue_id)

    async def update_issue(self, issue_id: int, fields: Dict[str, Any], require_open: bool = True) -> bool:
        self.update_calls.append({"issue_id": issue_id, **fields})
        if issue_id in self.fail_updates_for:
            raise RuntimeError("database unavailable")
        issue = self.issues.get(issue_id)
        if issue is None:
            return False
        if require_open and issue.status in TERMINAL_STATUSES:
            return False
        self.issues[issue_id] = issue.with_changes(**fields)
        return True

    async def list_issues(self, filters: Dict[str, Any]) -> List[Issue]:
        result = []
        for issue in self.issues.values():
            if "priority" in filters and issue.priority != filters["priority"]:
                continue
            if "city" in filters and issue.city != filters["city"]:
                continue
            if "cluster" in filters and issue.cluster != filters["cluster"]:
                continue
            if "assigned_to" in filters and issue.assigned_to != filters["assigned_to"]:
                continue
            if filters.get("open_only") and not issue.is_open:
                continue
            if filters.get("start_date") and issue.created_at < filters["start_date"]:
                continue
            if filters.get("end_date") and issue.created_at > filters["end_date"]:
                continue
            result.append(issue)
        return sorted(result, key=lambda i: (i.created_at, i.id))


class InMemoryAssigneeDirectory(IAssigneeDirectory):
    """Users with open counts computed live from the issue store."""

    def __init__(self, issue_repository: InMemoryIssueRepository, users: Sequence[Dict[str, Any]] = ()):
        self._issues = issue_repository
        self.users = list(users)
        self.calls = 0
        self.fail = False

    async def find_by_role(self, roles: Sequence[str], exclude_closed: bool = True) -> List[AssigneeCandidate]:
        self.calls += 1
        if self.fail:
            raise RepositoryException("Failed to load assignees: connection reset")
        candidates = []
        for user in self.users:
            if user["role"] not in roles or not user.get("is_active", True):
                continue
            count = sum(
                1 for issue in self._issues.issues.values()
                if issue.assigned_to == user["id"] and (issue.is_open or not exclude_closed)
            )
            candidates.append(AssigneeCandidate(
                id=user["id"],
                name=user["name"],
                role=user["role"],
                open_issue_count=count,
                city=user.get("city"),
                cluster=user.get("cluster"),
            ))
        return candidates


class InMemoryAuditRepository(IAuditRepository):
    def __init__(self):
        self.entries: List[AuditEntry] = []
        self.fail = False

    async def append(self, entry: AuditEntry) -> None:
        if self.fail:
            raise RuntimeError("audit table locked")
        self.entries.append(entry)

    async def list_for_issue(self, issue_id: int, limit: int) -> List[AuditEntry]:
        return [e for e in self.entries if e.issue_id == issue_id][:limit]

    async def list_for_actor(self, actor_id: str, limit: int) -> List[AuditEntry]:
        return [e for e in self.entries if e.actor_id == actor_id][:limit]

    def actions_for(self, issue_id: int) -> List[str]:
        return [e.action for e in self.entries if e.issue_id == issue_id]


class RecordingNotifier(INotifier):
    def __init__(self, result: bool = True, error: Optional[Exception] = None, delay: float = 0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def notify(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> bool:
        self.calls.append({"kind": kind, "recipients": recipients, "payload": payload})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    def kinds(self) -> List[str]:
        return [call["kind"] for call in self.calls]


DEFAULT_USERS = [
    {"id": 1, "name": "Asha", "role": "agent", "city": "Pune", "cluster": "west"},
    {"id": 2, "name": "Bilal", "role": "agent", "city": "Delhi", "cluster": "north"},
    {"id": 10, "name": "Chitra", "role": "manager", "city": "Pune", "cluster": "west"},
    {"id": 11, "name": "Dev", "role": "manager", "city": "Delhi", "cluster": "north"},
    {"id": 20, "name": "Esha", "role": "admin", "city": "Mumbai", "cluster": "west"},
]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(TUESDAY_2PM)


@pytest.fixture
def policy() -> EscalationPolicy:
    return EscalationPolicy()


@pytest.fixture
def policy_provider(policy) -> StaticPolicyProvider:
    return StaticPolicyProvider(policy)


@pytest.fixture
def issue_repo() -> InMemoryIssueRepository:
    return InMemoryIssueRepository()


@pytest.fixture
def directory(issue_repo) -> InMemoryAssigneeDirectory:
    return InMemoryAssigneeDirectory(issue_repo, DEFAULT_USERS)


@pytest.fixture
def audit_repo() -> InMemoryAuditRepository:
    return InMemoryAuditRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_dispatcher(issue_repo, directory, audit_repo, notifier, policy_provider, clock):
    """Build a dispatcher over the in-memory stores; keyword overrides replace parts."""

    def _make(**overrides: Any) -> EscalationDispatcher:
        provider = overrides.pop("policy_provider", policy_provider)
        return EscalationDispatcher(
            issue_repository=overrides.pop("issue_repository", issue_repo),
            engine=EscalationEngine(provider, clock=clock),
            ledger=AuditLedger(overrides.pop("audit_repository", audit_repo)),
            balancer=WorkloadBalancer(
                overrides.pop("directory", directory), provider, rng=random.Random(7)
            ),
            notifier=overrides.pop("notifier", notifier),
            notification_timeout=overrides.pop("notification_timeout", 1.0),
            commit=overrides.pop("commit", None),
        )

    return _make
