"""
Shared Kernel Module
====================

Generic infrastructure shared by the escalation bounded context and the
application entry point: structured logging and API middleware.

DO NOT add escalation business logic to the shared kernel.
"""
