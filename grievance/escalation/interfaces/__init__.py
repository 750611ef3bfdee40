"""
Escalation Interfaces Layer
===========================

Interface adapters (controllers) for the escalation engine.

This is the outermost layer - handles HTTP requests/responses and
delegates to the dispatcher.
"""

from grievance.escalation.interfaces.controllers import (
    escalation_router,
    build_dispatcher,
    get_dispatcher,
    get_ledger,
)

__all__ = ["escalation_router", "build_dispatcher", "get_dispatcher", "get_ledger"]
