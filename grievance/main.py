"""
Grievance Escalation - Main Application
=======================================

Issue lifecycle escalation and assignment engine.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Engine, dispatcher and DTOs
- Domain: Entities, policy and the escalation state machine
- Infrastructure: Database, policy file watcher, notifier, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from grievance.config import settings
from grievance.core import ApplicationException
from grievance.escalation.infrastructure import (
    EscalationPolicyManager,
    EscalationScheduler,
    WebhookNotifier,
)
from grievance.escalation.interfaces import build_dispatcher, escalation_router
from grievance.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
    ping_database,
)
from grievance.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from grievance.shared.infrastructure.logging import get_logger, log_latency, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load the escalation policy and watch it for changes
    4. Create the notifier
    5. Start the escalation scheduler

    SHUTDOWN runs the same steps in reverse.
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting escalation service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    policy_manager = EscalationPolicyManager()
    policy_manager.load(settings.escalation_policy_path)
    policy_manager.start_watching()
    app.state.policy_provider = policy_manager

    notifier = WebhookNotifier(
        settings.notifier_webhook_url,
        timeout_seconds=settings.notifier_timeout_seconds
    )
    app.state.notifier = notifier
    app.state.settings = settings

    async def escalation_tick_job():
        """Background escalation pass."""
        with log_latency(logger, "escalation_tick"):
            async with get_session_context() as session:
                dispatcher = build_dispatcher(
                    session, policy_manager, notifier, balancer_seed=settings.balancer_seed
                )
                await dispatcher.evaluate_tick()

    scheduler = EscalationScheduler(interval_seconds=settings.escalation_interval_seconds)
    await scheduler.start(escalation_tick_job)
    app.state.scheduler = scheduler

    logger.info("Escalation service started")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down escalation service")
    await scheduler.stop()
    policy_manager.stop_watching()
    await notifier.close()
    await close_database()
    logger.info("Escalation service shutdown complete")


app = FastAPI(
    title="Grievance Escalation API",
    description="""
    Escalates unresolved issues by priority and age, assigns them to the
    least-loaded eligible user, and keeps an append-only audit trail.

    - `POST /escalations/tick` - run one escalation pass
    - `POST /escalations/issues/{id}/escalate` - manual escalation
    - `POST /escalations/issues/{id}/reopen` - reopen a closed issue
    - `POST /escalations/issues/{id}/auto-assign` - assign by workload
    - `POST /escalations/rebalance` - move issues off overloaded users
    - `GET /escalations/metrics` - escalation metrics
    - `GET /escalations/issues/{id}/audit` - audit trail of an issue
    - `GET /escalations/actors/{id}/audit` - audit trail of an actor
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(escalation_router)


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check for load balancers and orchestrators."""
    scheduler = getattr(request.app.state, "scheduler", None)
    policy_provider = getattr(request.app.state, "policy_provider", None)

    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": {
            "database": "connected" if await ping_database() else "unavailable",
            "escalation_policy": "loaded" if policy_provider else "defaults",
            "scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        }
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "health": "/health",
        "escalations": "/escalations",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "grievance.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower()
    )
