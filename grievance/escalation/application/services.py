"""
Escalation Application Services
===============================

Application services orchestrate domain logic and coordinate with the
stores the engine depends on.

Following SOLID principles:
- Single Responsibility: ledger, balancer and engine each do one job
- Dependency Inversion: depend on the store interfaces below, not on
  concrete implementations
"""

import random
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from grievance.config import VALID_ROLES
from grievance.core import AuditPersistenceException, ValidationException
from grievance.escalation.domain import (
    AssigneeCandidate,
    AuditEntry,
    DurationCalculator,
    EscalationDecision,
    EscalationPolicy,
    Issue,
    escalate_manually,
    evaluate_issue,
    reopen_issue,
)
from grievance.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

# Highest priority first, then oldest first.
TICK_ORDER = ("-priority", "created_at")


# ========== Store Interfaces (Dependency Inversion) ==========

class IIssueRepository(ABC):
    """Interface for the issue store."""

    @abstractmethod
    async def find_open_issues(self, order_by: Sequence[str] = TICK_ORDER) -> List[Issue]:
        """Get every issue whose status is neither resolved nor closed."""

    @abstractmethod
    async def get_by_id(self, issue_id: int) -> Optional[Issue]:
        """Get issue by ID."""

    @abstractmethod
    async def update_issue(
        self,
        issue_id: int,
        fields: Dict[str, Any],
        require_open: bool = True
    ) -> bool:
        """
        Atomically update a single issue row.

        When `require_open` is set the update only applies while the issue
        is still open. Returns False when no row was changed.
        """

    @abstractmethod
    async def list_issues(self, filters: Dict[str, Any]) -> List[Issue]:
        """List issues matching filters, oldest first."""


class IAssigneeDirectory(ABC):
    """Interface for the dashboard user directory."""

    @abstractmethod
    async def find_by_role(
        self,
        roles: Sequence[str],
        exclude_closed: bool = True
    ) -> List[AssigneeCandidate]:
        """Get active users with one of the roles and their live issue counts."""


class IAuditRepository(ABC):
    """Interface for the append-only audit store."""

    @abstractmethod
    async def append(self, entry: AuditEntry) -> None:
        """Persist a new entry."""

    @abstractmethod
    async def list_for_issue(self, issue_id: int, limit: int) -> List[AuditEntry]:
        """Get entries for an issue, newest first."""

    @abstractmethod
    async def list_for_actor(self, actor_id: str, limit: int) -> List[AuditEntry]:
        """Get entries written by an actor, newest first."""


class INotifier(ABC):
    """Interface for the external notifier."""

    @abstractmethod
    async def notify(self, kind: str, recipients: List[str], payload: Dict[str, Any]) -> bool:
        """Deliver a notification. Returns False when it was not delivered."""


class IEscalationPolicyProvider(ABC):
    """Interface for escalation policy access."""

    @abstractmethod
    def get_policy(self) -> EscalationPolicy:
        """Get current escalation policy."""


class StaticPolicyProvider(IEscalationPolicyProvider):
    """Provider serving a fixed policy object."""

    def __init__(self, policy: Optional[EscalationPolicy] = None):
        self._policy = policy or EscalationPolicy()

    def get_policy(self) -> EscalationPolicy:
        return self._policy


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ========== Application Services ==========

class AuditLedger:
    """
    Append-only log of every state transition on an issue.

    `record` reports persistence failures to its caller as
    AuditPersistenceException; callers applying an escalation log the
    failure and keep the escalation.
    """

    def __init__(self, repository: IAuditRepository):
        self._repo = repository

    async def record(self, entry: AuditEntry) -> str:
        """
        Append an entry and return its identifier.

        Raises:
            AuditPersistenceException: If the store rejected the write
        """
        stored = replace(entry, id=entry.id or str(uuid4()))
        try:
            await self._repo.append(stored)
        except Exception as e:
            raise AuditPersistenceException(str(entry.issue_id), entry.action, e) from e

        logger.debug(
            "Audit entry recorded",
            extra={"issue_id": stored.issue_id, "action": stored.action, "audit_id": stored.id}
        )
        return stored.id

    async def history(
        self,
        issue_id: Optional[int] = None,
        actor_id: Optional[str] = None,
        limit: int = 50
    ) -> Tuple[AuditEntry, ...]:
        """
        Entries for an issue or an actor, newest first.

        Raises:
            ValidationException: Unless exactly one of issue_id/actor_id is given
        """
        if (issue_id is None) == (actor_id is None):
            raise ValidationException("Provide exactly one of issue_id or actor_id")
        if limit < 1:
            raise ValidationException("limit must be positive")

        if issue_id is not None:
            entries = await self._repo.list_for_issue(issue_id, limit)
        else:
            entries = await self._repo.list_for_actor(actor_id, limit)

        ordered = sorted(entries, key=lambda e: e.created_at, reverse=True)
        return tuple(ordered[:limit])


class WorkloadBalancer:
    """
    Picks the least-loaded eligible assignee.

    Candidates are ordered by (open issue count, role rank, locality,
    seeded random). The balancer only reads: the caller performs the
    assignment write, so two issues in one pass may land on the same
    person.
    """

    def __init__(
        self,
        directory: IAssigneeDirectory,
        policy_provider: IEscalationPolicyProvider,
        rng: Optional[random.Random] = None
    ):
        self._directory = directory
        self._policy_provider = policy_provider
        self._rng = rng or random.Random()

    @staticmethod
    def _locality(candidate: AssigneeCandidate, city: Optional[str], cluster: Optional[str]) -> int:
        score = 0
        if city is not None and candidate.city != city:
            score += 2
        if cluster is not None and candidate.cluster != cluster:
            score += 1
        return score

    async def select_assignee(
        self,
        eligible_roles: Iterable[str],
        exclude_closed: bool = True,
        city: Optional[str] = None,
        cluster: Optional[str] = None,
        exclude_ids: Iterable[int] = ()
    ) -> Optional[AssigneeCandidate]:
        """
        Choose the next owner among users holding one of `eligible_roles`.

        Returns None when no one is eligible; that is an expected outcome.
        """
        roles = sorted(set(eligible_roles))
        if not roles:
            return None

        excluded = set(exclude_ids)
        candidates = await self._directory.find_by_role(roles, exclude_closed=exclude_closed)
        candidates = [c for c in candidates if c.role in roles and c.id not in excluded]
        if not candidates:
            return None

        policy = self._policy_provider.get_policy()
        # Draw in id order so a seeded generator gives repeatable picks.
        tiebreak = {c.id: self._rng.random() for c in sorted(candidates, key=lambda c: c.id)}

        return min(
            candidates,
            key=lambda c: (
                c.open_issue_count,
                policy.rank_of(c.role),
                self._locality(c, city, cluster),
                tiebreak[c.id],
            )
        )

    async def find_overloaded(
        self,
        threshold: int,
        roles: Sequence[str] = tuple(VALID_ROLES)
    ) -> List[AssigneeCandidate]:
        """Users whose open issue count is above `threshold`, busiest first."""
        candidates = await self._directory.find_by_role(list(roles))
        overloaded = [c for c in candidates if c.open_issue_count > threshold]
        return sorted(overloaded, key=lambda c: (-c.open_issue_count, c.id))


class EscalationEngine:
    """
    Entry point to the escalation state machine.

    Binds the pure decision functions to the current policy, a duration
    calculator built from the policy's working window, and a clock.
    """

    def __init__(
        self,
        policy_provider: IEscalationPolicyProvider,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._policy_provider = policy_provider
        self._clock = clock or utcnow

    @property
    def policy(self) -> EscalationPolicy:
        return self._policy_provider.get_policy()

    def calculator(self, policy: Optional[EscalationPolicy] = None) -> DurationCalculator:
        return DurationCalculator((policy or self.policy).working_window)

    def now(self) -> datetime:
        return self._clock()

    def evaluate(self, issue: Issue) -> EscalationDecision:
        """
        Decide whether the issue escalates now.

        Raises:
            ConfigurationGapException: If the issue's priority has no threshold
        """
        policy = self.policy
        return evaluate_issue(issue, policy, self.calculator(policy), self.now())

    def escalate_manually(
        self,
        issue: Issue,
        reason: str,
        actor_id: str,
        explicit_priority: Optional[str] = None,
        explicit_target_role: Optional[str] = None
    ) -> EscalationDecision:
        policy = self.policy
        return escalate_manually(
            issue, policy, self.calculator(policy), self.now(),
            reason=reason,
            actor_id=actor_id,
            explicit_priority=explicit_priority,
            explicit_target_role=explicit_target_role,
        )

    def reopen(self, issue: Issue, actor_id: str) -> EscalationDecision:
        return reopen_issue(issue, self.policy, self.now(), actor_id)
