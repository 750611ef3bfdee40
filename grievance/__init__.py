"""
Grievance Escalation Engine
===========================

Issue lifecycle escalation and assignment for the grievance portal.
"""

__version__ = "1.0.0"
