"""
Escalation State Machine
========================

Pure decision logic for issue escalation.

The escalation state is not stored; it is derived once per evaluation
from (status, escalation_level). Deciding never performs I/O: every side
effect is returned as an explicit effect object and applied by the
dispatcher in the order given.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from grievance.config import (
    AuditAction, IssueStatus, NotificationKind, PRIORITY_ORDER,
    SYSTEM_ACTOR, VALID_PRIORITIES, VALID_ROLES
)
from grievance.core import (
    ConfigurationGapException, InvalidTransitionException, ValidationException
)
from grievance.escalation.domain.durations import DurationCalculator
from grievance.escalation.domain.entities import Issue
from grievance.escalation.domain.value_objects import EscalationPolicy, EscalationThreshold


class EscalationState(Enum):
    """Escalation state derived from an issue's status and level."""

    FRESH = "fresh"
    ESCALATED_L1 = "escalated_l1"
    ESCALATED_L2 = "escalated_l2"
    ESCALATED_L3 = "escalated_l3"
    CLOSED = "closed"

    @classmethod
    def derive(cls, status: str, escalation_level: int) -> "EscalationState":
        if status in (IssueStatus.RESOLVED, IssueStatus.CLOSED):
            return cls.CLOSED
        if escalation_level <= 0:
            return cls.FRESH
        if escalation_level == 1:
            return cls.ESCALATED_L1
        if escalation_level == 2:
            return cls.ESCALATED_L2
        return cls.ESCALATED_L3

    @classmethod
    def for_level(cls, level: int) -> "EscalationState":
        return cls.derive(IssueStatus.OPEN, level)


class Trigger(str):
    """What caused an escalation."""
    AUTOMATIC = "automatic"
    MANUAL = "manual"


# ========== Effects ==========

@dataclass(frozen=True)
class UpdateIssue:
    """Write fields to the issue store. `require_open` guards the row update."""
    fields: Dict[str, Any]
    require_open: bool = True


@dataclass(frozen=True)
class RecordAudit:
    """Append an entry to the audit ledger."""
    action: str
    actor_id: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_status: Optional[str] = None
    new_status: Optional[str] = None


@dataclass(frozen=True)
class Reassign:
    """Ask the workload balancer for a new owner among `roles`."""
    roles: Tuple[str, ...]
    actor_id: str
    level: int


@dataclass(frozen=True)
class Notify:
    """Fire-and-forget message to the external notifier."""
    kind: str
    recipients: Tuple[str, ...]
    payload: Dict[str, Any] = field(default_factory=dict)


Effect = Union[UpdateIssue, RecordAudit, Reassign, Notify]


@dataclass(frozen=True)
class EscalationDecision:
    """Outcome of evaluating one issue, with the effects to apply."""

    issue_id: int
    state: EscalationState
    new_state: EscalationState
    reason: str
    age_hours: float = 0.0
    new_priority: Optional[str] = None
    new_level: Optional[int] = None
    effects: Tuple[Effect, ...] = ()

    @property
    def should_escalate(self) -> bool:
        return self.new_level is not None

    @property
    def has_effects(self) -> bool:
        return bool(self.effects)


def next_priority(priority: str) -> str:
    """
    One step up along low -> medium -> high -> critical.

    Critical stays critical.

    Raises:
        ConfigurationGapException: If the priority is not in the order
    """
    if priority not in PRIORITY_ORDER:
        raise ConfigurationGapException(priority)
    index = PRIORITY_ORDER.index(priority)
    return PRIORITY_ORDER[min(index + 1, len(PRIORITY_ORDER) - 1)]


def _no_change(issue: Issue, state: EscalationState, reason: str, age_hours: float = 0.0) -> EscalationDecision:
    return EscalationDecision(
        issue_id=issue.id,
        state=state,
        new_state=state,
        reason=reason,
        age_hours=age_hours,
    )


def _recipients(issue: Issue, policy: EscalationPolicy) -> Tuple[str, ...]:
    recipients = [f"role:{role}" for role in policy.notify_roles]
    if issue.reporter_id is not None:
        recipients.append(f"employee:{issue.reporter_id}")
    return tuple(recipients)


def _build_escalation(
    issue: Issue,
    policy: EscalationPolicy,
    calculator: DurationCalculator,
    state: EscalationState,
    threshold: Optional[EscalationThreshold],
    now: datetime,
    age_hours: float,
    trigger: str,
    actor_id: str,
    reason: str,
    new_priority: str,
    explicit_target_role: Optional[str] = None
) -> EscalationDecision:
    new_level = min(issue.escalation_level + 1, policy.max_level)
    new_count = issue.escalation_count + 1

    effects = [
        UpdateIssue(fields={
            "priority": new_priority,
            "escalation_level": new_level,
            "escalation_count": new_count,
            "escalated_at": now,
        }),
        RecordAudit(
            action=AuditAction.ESCALATED,
            actor_id=actor_id,
            previous_status=issue.priority,
            new_status=new_priority,
            details={
                "trigger": trigger,
                "reason": reason,
                "previous_priority": issue.priority,
                "new_priority": new_priority,
                "previous_level": issue.escalation_level,
                "new_level": new_level,
                "escalation_count": new_count,
                "age_hours": age_hours,
                "issue_status": issue.status,
            },
        ),
    ]

    if issue.is_unassigned or explicit_target_role:
        roles = [explicit_target_role] if explicit_target_role else policy.roles_for_level(new_level, threshold)
        effects.append(Reassign(roles=tuple(roles), actor_id=actor_id, level=new_level))

    payload = {
        "issue_id": issue.id,
        "previous_priority": issue.priority,
        "new_priority": new_priority,
        "escalation_level": new_level,
        "trigger": trigger,
        "reason": reason,
        "age_hours": age_hours,
        "escalated_at": now.isoformat(),
    }
    if threshold is not None:
        payload["sla_deadline"] = calculator.add_business_hours(issue.created_at, threshold.hours).isoformat()
    effects.append(Notify(
        kind=NotificationKind.ISSUE_ESCALATED,
        recipients=_recipients(issue, policy),
        payload=payload,
    ))

    return EscalationDecision(
        issue_id=issue.id,
        state=state,
        new_state=EscalationState.for_level(new_level),
        reason=reason,
        age_hours=age_hours,
        new_priority=new_priority,
        new_level=new_level,
        effects=tuple(effects),
    )


def evaluate_issue(
    issue: Issue,
    policy: EscalationPolicy,
    calculator: DurationCalculator,
    now: datetime
) -> EscalationDecision:
    """
    Decide whether an issue must escalate on this tick.

    Raises:
        ConfigurationGapException: If the issue's priority has no threshold
    """
    state = EscalationState.derive(issue.status, issue.escalation_level)
    if state is EscalationState.CLOSED:
        return _no_change(issue, state, "issue is resolved or closed")

    threshold = policy.threshold_for(issue.priority)
    age_hours = calculator.business_hours(issue.escalation_anchor, now)

    if issue.escalation_level >= policy.max_level or state is EscalationState.ESCALATED_L3:
        return _no_change(issue, state, "maximum escalation level reached", age_hours)

    if state is EscalationState.FRESH:
        if age_hours < threshold.hours:
            return _no_change(issue, state, "within time budget", age_hours)
        reason = f"Open for {age_hours} business hours, budget is {threshold.hours}"
    else:
        anchor = issue.escalation_anchor
        if now - anchor < timedelta(hours=policy.cooldown_hours):
            return _no_change(issue, state, "escalation cooldown active", age_hours)
        if age_hours < policy.reescalation_business_hours:
            return _no_change(issue, state, "re-escalation budget not spent", age_hours)
        reason = f"Still open {age_hours} business hours after the last escalation"

    return _build_escalation(
        issue, policy, calculator, state, threshold, now, age_hours,
        trigger=Trigger.AUTOMATIC,
        actor_id=SYSTEM_ACTOR,
        reason=reason,
        new_priority=next_priority(issue.priority),
    )


def escalate_manually(
    issue: Issue,
    policy: EscalationPolicy,
    calculator: DurationCalculator,
    now: datetime,
    reason: str,
    actor_id: str,
    explicit_priority: Optional[str] = None,
    explicit_target_role: Optional[str] = None
) -> EscalationDecision:
    """
    Escalate on request, skipping the age and cooldown checks.

    Raises:
        InvalidTransitionException: If the issue is resolved or closed
        ValidationException: If the explicit priority or role is unknown
    """
    state = EscalationState.derive(issue.status, issue.escalation_level)
    if state is EscalationState.CLOSED:
        raise InvalidTransitionException(
            str(issue.id), f"Issue {issue.id} is {issue.status} and cannot be escalated"
        )
    if explicit_priority is not None and explicit_priority not in VALID_PRIORITIES:
        raise ValidationException(f"Unknown priority '{explicit_priority}'")
    if explicit_target_role is not None and explicit_target_role not in VALID_ROLES:
        raise ValidationException(f"Unknown role '{explicit_target_role}'")

    try:
        threshold = policy.threshold_for(issue.priority)
    except ConfigurationGapException:
        threshold = None

    return _build_escalation(
        issue, policy, calculator, state, threshold, now,
        age_hours=calculator.business_hours(issue.escalation_anchor, now),
        trigger=Trigger.MANUAL,
        actor_id=actor_id,
        reason=reason,
        new_priority=explicit_priority or next_priority(issue.priority),
        explicit_target_role=explicit_target_role,
    )


def reopen_issue(
    issue: Issue,
    policy: EscalationPolicy,
    now: datetime,
    actor_id: str
) -> EscalationDecision:
    """
    Start a new open lifecycle for a recently closed issue.

    The escalation level resets and the clock restarts from `now`
    (`reopened_at`); the escalation count is kept.

    Raises:
        InvalidTransitionException: If the issue is open or the reopen window has passed
    """
    state = EscalationState.derive(issue.status, issue.escalation_level)
    if state is not EscalationState.CLOSED:
        raise InvalidTransitionException(str(issue.id), f"Issue {issue.id} is not closed")

    closed_at = issue.closed_at or issue.updated_at
    if closed_at is None or now - closed_at > timedelta(days=policy.reopen_window_days):
        raise InvalidTransitionException(
            str(issue.id),
            f"Issue {issue.id} can only be reopened within {policy.reopen_window_days} days of closure"
        )

    history = list(issue.previously_closed_at) + [closed_at]
    effects = (
        UpdateIssue(
            fields={
                "status": IssueStatus.OPEN,
                "closed_at": None,
                "previously_closed_at": history,
                "escalation_level": 0,
                "escalated_at": None,
                "reopened_at": now,
            },
            require_open=False,
        ),
        RecordAudit(
            action=AuditAction.REOPENED,
            actor_id=actor_id,
            previous_status=issue.status,
            new_status=IssueStatus.OPEN,
            details={
                "closed_at": closed_at.isoformat(),
                "reopen_count": len(history),
                "previous_escalation_level": issue.escalation_level,
            },
        ),
    )
    return EscalationDecision(
        issue_id=issue.id,
        state=state,
        new_state=EscalationState.FRESH,
        reason="reopened",
        effects=effects,
    )
