"""
Approval Workflow Engine

Multi-step, multi-actor approval with time-bound escalation for
enterprise-compliance monitoring: reusable templates, a versioned
instance state machine and a periodic SLA sweeper.
"""

__version__ = "1.0.0"
