"""
Escalation Controllers (API Routes)
===================================

FastAPI routes for the escalation engine.

Controllers are thin - they delegate to the dispatcher.
"""

import random
from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from grievance.config import settings
from grievance.escalation.application import (
    AssignmentResponse,
    AuditEntryResponse,
    AuditHistoryResponse,
    AuditLedger,
    AutoAssignRequest,
    ErrorCode,
    EscalateRequest,
    EscalationDispatcher,
    EscalationEngine,
    EscalationResponse,
    EscalationResult,
    IEscalationPolicyProvider,
    INotifier,
    IssueResponse,
    MetricsQueryDTO,
    MetricsResponse,
    RebalanceRequest,
    RebalanceResponse,
    ReopenRequest,
    StaticPolicyProvider,
    TickSummaryResponse,
    WorkloadBalancer,
)
from grievance.escalation.application.dto import PriorityStr
from grievance.escalation.infrastructure import (
    SQLAlchemyAssigneeDirectory,
    SQLAlchemyAuditRepository,
    SQLAlchemyIssueRepository,
)
from grievance.infrastructure.database import get_session, session_committer
from grievance.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/escalations", tags=["Escalations"])

_ERROR_STATUS = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.VALIDATION: 422,
    ErrorCode.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.PERSISTENCE: status.HTTP_409_CONFLICT,
}


# ========== Composition ==========

def build_dispatcher(
    session: AsyncSession,
    policy_provider: IEscalationPolicyProvider,
    notifier: Optional[INotifier] = None,
    clock: Optional[Callable[[], datetime]] = None,
    balancer_seed: Optional[int] = None
) -> EscalationDispatcher:
    """
    Wire the dispatcher to SQLAlchemy stores sharing one session.

    The dispatcher commits the session after every issue it changes.
    """
    return EscalationDispatcher(
        issue_repository=SQLAlchemyIssueRepository(session),
        engine=EscalationEngine(policy_provider, clock=clock),
        ledger=AuditLedger(SQLAlchemyAuditRepository(session)),
        balancer=WorkloadBalancer(
            SQLAlchemyAssigneeDirectory(session),
            policy_provider,
            rng=random.Random(balancer_seed) if balancer_seed is not None else None
        ),
        notifier=notifier,
        notification_timeout=settings.notifier_timeout_seconds,
        commit=session_committer(session),
    )


# ========== Dependencies ==========

def get_policy_provider(request: Request) -> IEscalationPolicyProvider:
    """Policy provider loaded at startup, or the built-in defaults."""
    provider = getattr(request.app.state, "policy_provider", None)
    return provider or StaticPolicyProvider()


async def get_dispatcher(
    request: Request,
    session: AsyncSession = Depends(get_session)
) -> EscalationDispatcher:
    """Get a dispatcher bound to the request's session."""
    return build_dispatcher(
        session,
        get_policy_provider(request),
        notifier=getattr(request.app.state, "notifier", None),
        balancer_seed=settings.balancer_seed,
    )


async def get_ledger(session: AsyncSession = Depends(get_session)) -> AuditLedger:
    return AuditLedger(SQLAlchemyAuditRepository(session))


def _escalation_response(result: EscalationResult) -> EscalationResponse:
    if not result.success:
        raise HTTPException(
            status_code=_ERROR_STATUS.get(result.error_code, status.HTTP_409_CONFLICT),
            detail=result.error
        )
    return EscalationResponse(
        success=True,
        issue=IssueResponse.from_domain(result.issue),
        audit_failures=result.audit_failures,
        notification_failures=result.notification_failures,
    )


# ========== Route Handlers ==========

@router.post(
    "/tick",
    response_model=TickSummaryResponse,
    summary="Run one escalation pass",
    description="""
    Evaluate every open issue once, highest priority and oldest first.

    Issues whose priority has no configured threshold are skipped; a
    failure on one issue never stops the rest of the pass.
    """
)
async def run_tick(dispatcher: EscalationDispatcher = Depends(get_dispatcher)):
    summary = await dispatcher.evaluate_tick()
    return TickSummaryResponse(**summary.to_dict())


@router.post(
    "/issues/{issue_id}/escalate",
    response_model=EscalationResponse,
    summary="Escalate an issue now",
    description="""
    Manual escalation bypasses the age and cooldown checks.

    Without an explicit `priority` the issue moves one step up
    (low -> medium -> high -> critical). With `target_role` the issue is
    reassigned to the least-loaded user holding that role.
    """
)
async def escalate_issue(
    issue_id: int,
    request: EscalateRequest,
    dispatcher: EscalationDispatcher = Depends(get_dispatcher)
):
    result = await dispatcher.escalate_now(
        issue_id,
        reason=request.reason,
        actor_id=request.actor_id,
        explicit_priority=request.priority,
        explicit_target_role=request.target_role,
    )
    return _escalation_response(result)


@router.post(
    "/issues/{issue_id}/reopen",
    response_model=EscalationResponse,
    summary="Reopen a recently closed issue"
)
async def reopen_issue(
    issue_id: int,
    request: ReopenRequest,
    dispatcher: EscalationDispatcher = Depends(get_dispatcher)
):
    result = await dispatcher.reopen(issue_id, request.actor_id)
    return _escalation_response(result)


@router.post(
    "/issues/{issue_id}/auto-assign",
    response_model=AssignmentResponse,
    summary="Assign an issue to the least-loaded eligible user"
)
async def auto_assign_issue(
    issue_id: int,
    request: Optional[AutoAssignRequest] = None,
    dispatcher: EscalationDispatcher = Depends(get_dispatcher)
):
    actor_id = request.actor_id if request else AutoAssignRequest().actor_id
    result = await dispatcher.auto_assign(issue_id, actor_id=actor_id)
    return AssignmentResponse.from_result(result)


@router.post(
    "/rebalance",
    response_model=RebalanceResponse,
    summary="Move issues away from overloaded users"
)
async def rebalance(
    request: Optional[RebalanceRequest] = None,
    dispatcher: EscalationDispatcher = Depends(get_dispatcher)
):
    request = request or RebalanceRequest()
    report = await dispatcher.rebalance_workload(
        threshold=request.threshold,
        per_assignee=request.per_assignee,
        actor_id=request.actor_id,
    )
    return RebalanceResponse(
        overloaded_users=report.overloaded_users,
        moved=[AssignmentResponse.from_result(moved) for moved in report.moved],
    )


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    summary="Escalation metrics"
)
async def get_metrics(
    priority: Optional[PriorityStr] = Query(None, description="Filter by priority"),
    city: Optional[str] = Query(None, description="Filter by city"),
    cluster: Optional[str] = Query(None, description="Filter by cluster"),
    start_date: Optional[datetime] = Query(None, description="Created at or after"),
    end_date: Optional[datetime] = Query(None, description="Created at or before"),
    dispatcher: EscalationDispatcher = Depends(get_dispatcher)
):
    try:
        query = MetricsQueryDTO(
            priority=priority, city=city, cluster=cluster,
            start_date=start_date, end_date=end_date
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    metrics = await dispatcher.get_metrics(query.to_filters())
    return MetricsResponse(**metrics)


@router.get(
    "/issues/{issue_id}/audit",
    response_model=AuditHistoryResponse,
    summary="Audit trail of an issue, newest first"
)
async def issue_audit(
    issue_id: int,
    limit: int = Query(50, ge=1, le=500),
    ledger: AuditLedger = Depends(get_ledger)
):
    entries = await ledger.history(issue_id=issue_id, limit=limit)
    return AuditHistoryResponse(
        entries=[AuditEntryResponse.from_domain(entry) for entry in entries],
        count=len(entries),
    )


@router.get(
    "/actors/{actor_id}/audit",
    response_model=AuditHistoryResponse,
    summary="Audit entries written by an actor, newest first"
)
async def actor_audit(
    actor_id: str,
    limit: int = Query(50, ge=1, le=500),
    ledger: AuditLedger = Depends(get_ledger)
):
    entries = await ledger.history(actor_id=actor_id, limit=limit)
    return AuditHistoryResponse(
        entries=[AuditEntryResponse.from_domain(entry) for entry in entries],
        count=len(entries),
    )


# Export router for inclusion in main app
escalation_router = router
