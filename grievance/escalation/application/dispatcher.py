"""
Escalation Dispatcher
=====================

Runs the escalation engine over the issue store and applies the effects
each decision returns, in order: issue write, audit, reassignment,
notification.

Only the primary issue write is load-bearing. Audit and notification
failures are logged and counted; a failed issue write fails that issue
alone and the tick moves on to the next one.

Each issue's changes are committed before its notifications go out, so
no row stays locked while the notifier is awaited and nothing is
announced that was not stored.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from grievance.config import AuditAction, NotificationKind, SYSTEM_ACTOR
from grievance.core import (
    AuditPersistenceException,
    ConfigurationGapException,
    InvalidTransitionException,
    RepositoryException,
    ResourceNotFoundException,
    ValidationException,
)
from grievance.escalation.application.services import (
    AuditLedger,
    EscalationEngine,
    IIssueRepository,
    INotifier,
    TICK_ORDER,
    WorkloadBalancer,
)
from grievance.escalation.domain import (
    AGE_BUCKETS,
    AssigneeCandidate,
    AuditEntry,
    EscalationDecision,
    Issue,
    Notify,
    Reassign,
    RecordAudit,
    UpdateIssue,
    tick_order_key,
)
from grievance.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ErrorCode(str):
    """Machine-readable failure reasons of an EscalationResult."""
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    VALIDATION = "validation"
    PERSISTENCE = "persistence"


@dataclass
class TickSummary:
    """Counters for one pass of the scheduler."""
    evaluated: int = 0
    escalated: int = 0
    skipped: int = 0
    failed: int = 0
    audit_failures: int = 0
    notification_failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class ApplyReport:
    """What happened while applying one decision."""
    issue: Issue
    assignee: Optional[AssigneeCandidate] = None
    audit_failures: int = 0
    notification_failures: int = 0
    # Held back until the changes are committed
    outbox: List[Notify] = field(default_factory=list)


@dataclass
class EscalationResult:
    success: bool
    issue: Optional[Issue] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    audit_failures: int = 0
    notification_failures: int = 0


@dataclass
class AssignmentResult:
    issue_id: int
    previous_assignee: Optional[int]
    assigned_to: Optional[int]
    assignee_name: Optional[str] = None
    roles: List[str] = field(default_factory=list)

    @property
    def assigned(self) -> bool:
        return self.assigned_to is not None and self.assigned_to != self.previous_assignee


@dataclass
class RebalanceReport:
    overloaded_users: int = 0
    moved: List[AssignmentResult] = field(default_factory=list)


class EscalationDispatcher:
    """
    Applies escalation decisions against the stores.

    Args:
        issue_repository: Issue store
        engine: Escalation engine (policy, calculator and clock)
        ledger: Audit ledger
        balancer: Workload balancer used for reassignment
        notifier: External notifier; None disables notifications
        notification_timeout: Upper bound in seconds for one delivery
        commit: Makes one issue's writes durable; None when the stores
            write through
    """

    def __init__(
        self,
        issue_repository: IIssueRepository,
        engine: EscalationEngine,
        ledger: AuditLedger,
        balancer: WorkloadBalancer,
        notifier: Optional[INotifier] = None,
        notification_timeout: float = 5.0,
        commit: Optional[Callable[[], Awaitable[None]]] = None
    ):
        self._issues = issue_repository
        self._engine = engine
        self._ledger = ledger
        self._balancer = balancer
        self._notifier = notifier
        self._notification_timeout = notification_timeout
        self._commit = commit

    # ========== Tick ==========

    async def evaluate_tick(self) -> TickSummary:
        """
        Evaluate every open issue once, highest priority and oldest first.

        A failure on one issue is counted and logged; it never stops the
        remaining issues from being evaluated.
        """
        summary = TickSummary()
        issues = await self._issues.find_open_issues(TICK_ORDER)

        for issue in sorted(issues, key=tick_order_key):
            summary.evaluated += 1
            try:
                decision = self._engine.evaluate(issue)
            except ConfigurationGapException as e:
                summary.skipped += 1
                logger.error(
                    "Skipping issue with no escalation threshold",
                    extra={"issue_id": issue.id, "priority": e.priority}
                )
                continue
            except Exception as e:
                summary.failed += 1
                logger.error(
                    f"Failed to evaluate issue: {e}",
                    extra={"issue_id": issue.id},
                    exc_info=True
                )
                continue

            if not decision.should_escalate:
                continue

            try:
                report = await self.apply(issue, decision)
            except RepositoryException as e:
                summary.failed += 1
                logger.error(
                    f"Escalation not persisted: {e.message}",
                    extra={"issue_id": issue.id}
                )
                continue

            summary.escalated += 1
            summary.audit_failures += report.audit_failures
            summary.notification_failures += report.notification_failures

        logger.info("Escalation tick complete", extra=summary.to_dict())
        return summary

    # ========== Effect application ==========

    async def apply(self, issue: Issue, decision: EscalationDecision) -> ApplyReport:
        """
        Apply a decision's effects in order, commit, then notify.

        Raises:
            RepositoryException: If the primary issue write failed or
                matched no row, or the commit failed; nothing is notified
        """
        report = ApplyReport(issue=issue)

        for effect in decision.effects:
            if isinstance(effect, UpdateIssue):
                await self._write(issue.id, effect.fields, require_open=effect.require_open)
                report.issue = report.issue.with_changes(**effect.fields)
            elif isinstance(effect, RecordAudit):
                await self._record(report, AuditEntry(
                    issue_id=issue.id,
                    actor_id=effect.actor_id,
                    action=effect.action,
                    details=dict(effect.details),
                    previous_status=effect.previous_status,
                    new_status=effect.new_status,
                    created_at=self._engine.now(),
                ))
            elif isinstance(effect, Reassign):
                await self._reassign(report, effect)
            elif isinstance(effect, Notify):
                report.outbox.append(effect)

        await self._finish(report)

        if decision.should_escalate:
            logger.info(
                "Issue escalated",
                extra={
                    "issue_id": issue.id,
                    "priority": report.issue.priority,
                    "escalation_level": report.issue.escalation_level,
                    "reason": decision.reason,
                }
            )
        return report

    async def _finish(self, report: ApplyReport) -> None:
        """Commit the issue's writes, then deliver its queued notifications."""
        if self._commit is not None:
            try:
                await self._commit()
            except Exception as e:
                raise RepositoryException(
                    f"Failed to commit changes to issue {report.issue.id}: {e}",
                    {"issue_id": report.issue.id}
                ) from e

        outbox, report.outbox = report.outbox, []
        for message in outbox:
            await self._notify(report, message.kind, list(message.recipients), message.payload)

    async def _write(self, issue_id: int, fields: Dict[str, Any], require_open: bool = True) -> None:
        try:
            updated = await self._issues.update_issue(issue_id, dict(fields), require_open=require_open)
        except RepositoryException:
            raise
        except Exception as e:
            raise RepositoryException(f"Failed to update issue {issue_id}: {e}") from e

        if not updated:
            raise RepositoryException(
                f"Issue {issue_id} was not updated; it may have been closed concurrently",
                {"issue_id": issue_id}
            )

    async def _record(self, report: ApplyReport, entry: AuditEntry) -> None:
        try:
            await self._ledger.record(entry)
        except AuditPersistenceException as e:
            report.audit_failures += 1
            logger.error(e.message, extra={"issue_id": entry.issue_id, "action": entry.action})

    async def _notify(
        self,
        report: ApplyReport,
        kind: str,
        recipients: List[str],
        payload: Dict[str, Any]
    ) -> None:
        if self._notifier is None or not recipients:
            return

        delivered = False
        try:
            delivered = await asyncio.wait_for(
                self._notifier.notify(kind, recipients, payload),
                timeout=self._notification_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Notification timed out",
                extra={"kind": kind, "timeout_seconds": self._notification_timeout}
            )
        except Exception as e:
            logger.warning(f"Notification failed: {e}", extra={"kind": kind})

        if not delivered:
            report.notification_failures += 1

    async def _assign(
        self,
        report: ApplyReport,
        candidate: AssigneeCandidate,
        action: str,
        actor_id: str,
        details: Dict[str, Any]
    ) -> None:
        issue = report.issue
        await self._write(issue.id, {"assigned_to": candidate.id})
        previous = issue.assigned_to
        report.issue = issue.with_changes(assigned_to=candidate.id)
        report.assignee = candidate

        await self._record(report, AuditEntry(
            issue_id=issue.id,
            actor_id=actor_id,
            action=action,
            previous_status=issue.status,
            new_status=issue.status,
            details={
                "previous_assignee": previous,
                "new_assignee": candidate.id,
                "assignee_role": candidate.role,
                **details,
            },
            created_at=self._engine.now(),
        ))
        report.outbox.append(Notify(
            kind=NotificationKind.ISSUE_ASSIGNED,
            recipients=(f"user:{candidate.id}",),
            payload={
                "issue_id": issue.id,
                "priority": issue.priority,
                "assigned_to": candidate.id,
                "assignee_name": candidate.name,
                "action": action,
            }
        ))

    async def _reassign(self, report: ApplyReport, effect: Reassign) -> None:
        # The escalation itself is already written; a failed reassignment
        # only leaves the owner unchanged.
        issue = report.issue
        exclude = [issue.assigned_to] if issue.assigned_to is not None else []
        try:
            candidate = await self._balancer.select_assignee(
                effect.roles,
                city=issue.city,
                cluster=issue.cluster,
                exclude_ids=exclude
            )
        except RepositoryException as e:
            logger.error(
                f"Assignee lookup after escalation failed: {e.message}",
                extra={"issue_id": issue.id, "roles": list(effect.roles)}
            )
            return

        if candidate is None:
            logger.warning(
                "No eligible assignee for escalated issue",
                extra={"issue_id": issue.id, "roles": list(effect.roles)}
            )
            return

        try:
            await self._assign(
                report, candidate, AuditAction.ESCALATION_REASSIGNED, effect.actor_id,
                {"roles": list(effect.roles), "escalation_level": effect.level}
            )
        except RepositoryException as e:
            logger.error(
                f"Reassignment after escalation failed: {e.message}",
                extra={"issue_id": issue.id, "assignee_id": candidate.id}
            )

    # ========== Manual operations ==========

    async def escalate_now(
        self,
        issue_id: int,
        reason: str,
        actor_id: str,
        explicit_priority: Optional[str] = None,
        explicit_target_role: Optional[str] = None
    ) -> EscalationResult:
        """Escalate an issue immediately, bypassing age and cooldown checks."""
        issue = await self._issues.get_by_id(issue_id)
        if issue is None:
            return EscalationResult(
                success=False, error=f"Issue {issue_id} not found", error_code=ErrorCode.NOT_FOUND
            )

        try:
            decision = self._engine.escalate_manually(
                issue,
                reason=reason,
                actor_id=actor_id,
                explicit_priority=explicit_priority,
                explicit_target_role=explicit_target_role,
            )
        except InvalidTransitionException as e:
            return EscalationResult(success=False, error=e.message, error_code=ErrorCode.INVALID_TRANSITION)
        except ValidationException as e:
            return EscalationResult(success=False, error=e.message, error_code=ErrorCode.VALIDATION)

        return await self._apply_for_result(issue, decision)

    async def reopen(self, issue_id: int, actor_id: str) -> EscalationResult:
        """Reopen a recently closed issue with a fresh escalation clock."""
        issue = await self._issues.get_by_id(issue_id)
        if issue is None:
            return EscalationResult(
                success=False, error=f"Issue {issue_id} not found", error_code=ErrorCode.NOT_FOUND
            )

        try:
            decision = self._engine.reopen(issue, actor_id)
        except InvalidTransitionException as e:
            return EscalationResult(success=False, error=e.message, error_code=ErrorCode.INVALID_TRANSITION)

        return await self._apply_for_result(issue, decision)

    async def _apply_for_result(self, issue: Issue, decision: EscalationDecision) -> EscalationResult:
        try:
            report = await self.apply(issue, decision)
        except RepositoryException as e:
            logger.error(e.message, extra={"issue_id": issue.id})
            return EscalationResult(success=False, error=e.message, error_code=ErrorCode.PERSISTENCE)

        return EscalationResult(
            success=True,
            issue=report.issue,
            audit_failures=report.audit_failures,
            notification_failures=report.notification_failures,
        )

    # ========== Assignment ==========

    async def auto_assign(self, issue_id: int, actor_id: str = SYSTEM_ACTOR) -> AssignmentResult:
        """
        Give an open issue to the least-loaded user allowed for its priority.

        Raises:
            ResourceNotFoundException: If the issue does not exist
            InvalidTransitionException: If the issue is resolved or closed
            ConfigurationGapException: If the priority has no assignment rule
            RepositoryException: If the assignment could not be written
        """
        issue = await self._issues.get_by_id(issue_id)
        if issue is None:
            raise ResourceNotFoundException("Issue", str(issue_id))
        if issue.is_terminal:
            raise InvalidTransitionException(str(issue_id), f"Issue {issue_id} is {issue.status}")

        roles = self._engine.policy.assignment_roles_for(issue.priority)
        report = ApplyReport(issue=issue)
        candidate = await self._balancer.select_assignee(
            roles, city=issue.city, cluster=issue.cluster
        )
        result = AssignmentResult(
            issue_id=issue.id, previous_assignee=issue.assigned_to, assigned_to=issue.assigned_to, roles=roles
        )

        if candidate is None:
            logger.warning("No eligible assignee", extra={"issue_id": issue.id, "roles": roles})
            return result
        if candidate.id == issue.assigned_to:
            result.assignee_name = candidate.name
            return result

        await self._assign(report, candidate, AuditAction.AUTO_ASSIGNED, actor_id, {"roles": roles})
        await self._finish(report)
        result.assigned_to = candidate.id
        result.assignee_name = candidate.name
        logger.info("Issue auto-assigned", extra={"issue_id": issue.id, "assignee_id": candidate.id})
        return result

    async def rebalance_workload(
        self,
        threshold: int = 10,
        per_assignee: int = 3,
        actor_id: str = SYSTEM_ACTOR
    ) -> RebalanceReport:
        """
        Move the oldest open issues away from overloaded users.

        A user is overloaded above `threshold` open issues; up to
        `per_assignee` of their oldest issues go to the least-loaded
        eligible user who is not overloaded.
        """
        if threshold < 0 or per_assignee < 1:
            raise ValidationException("threshold must be >= 0 and per_assignee >= 1")

        policy = self._engine.policy
        overloaded = await self._balancer.find_overloaded(threshold)
        report = RebalanceReport(overloaded_users=len(overloaded))
        excluded = {user.id for user in overloaded}

        for user in overloaded:
            issues = await self._issues.list_issues({"assigned_to": user.id, "open_only": True})
            for issue in self._oldest(issues, per_assignee):
                try:
                    roles = policy.assignment_roles_for(issue.priority)
                except ConfigurationGapException as e:
                    logger.error(e.message, extra={"issue_id": issue.id})
                    continue

                candidate = await self._balancer.select_assignee(
                    roles, city=issue.city, cluster=issue.cluster, exclude_ids=excluded
                )
                if candidate is None:
                    logger.warning("No eligible assignee for rebalancing", extra={"issue_id": issue.id})
                    continue

                step = ApplyReport(issue=issue)
                try:
                    await self._assign(
                        step, candidate, AuditAction.REASSIGNED, actor_id,
                        {"roles": roles, "reason": "workload_rebalance"}
                    )
                    await self._finish(step)
                except RepositoryException as e:
                    logger.error(e.message, extra={"issue_id": issue.id})
                    continue

                report.moved.append(AssignmentResult(
                    issue_id=issue.id,
                    previous_assignee=user.id,
                    assigned_to=candidate.id,
                    assignee_name=candidate.name,
                    roles=roles,
                ))

        logger.info(
            "Workload rebalanced",
            extra={"overloaded_users": report.overloaded_users, "moved": len(report.moved)}
        )
        return report

    @staticmethod
    def _oldest(issues: Iterable[Issue], limit: int) -> List[Issue]:
        return sorted((i for i in issues if i.is_open), key=lambda i: (i.created_at, i.id))[:limit]

    # ========== Reporting ==========

    async def get_metrics(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Escalation metrics over the issues matching `filters`.

        Supported filters: priority, city, cluster, start_date, end_date
        (bounds on created_at).
        """
        issues = await self._issues.list_issues(dict(filters or {}))
        policy = self._engine.policy
        calculator = self._engine.calculator(policy)
        now = self._engine.now()

        by_level = {level: 0 for level in range(1, policy.max_level + 1)}
        open_by_age_bucket = {bucket: 0 for bucket in AGE_BUCKETS}
        resolution_hours = []

        for issue in issues:
            if issue.escalation_level > 0:
                level = min(issue.escalation_level, policy.max_level)
                by_level[level] += 1
            if issue.is_open:
                open_by_age_bucket[calculator.age_bucket(issue.created_at, now)] += 1
            elif issue.closed_at is not None:
                resolution_hours.append(calculator.calendar_hours(issue.created_at, issue.closed_at))

        avg_resolution = None
        if resolution_hours:
            avg_resolution = round(sum(resolution_hours) / len(resolution_hours), 2)

        return {
            "total_issues": len(issues),
            "total_escalations": sum(issue.escalation_count for issue in issues),
            "by_level": by_level,
            "avg_resolution_hours": avg_resolution,
            "open_by_age_bucket": open_by_age_bucket,
        }
