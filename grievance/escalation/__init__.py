"""
Escalation Module
=================

Bounded context for issue lifecycle escalation and assignment.

Responsibilities:
- Measure issue age in calendar or business hours
- Decide when an open issue has exhausted its time budget
- Raise priority and escalation level on breach
- Hand the issue to the least-loaded eligible owner
- Record every state change in the append-only audit ledger
- Notify managers, admins and the reporter
"""
