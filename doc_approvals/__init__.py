"""
Document Approval Workflow Engine

Drives documents through configurable, multi-step approval templates with
per-step approval policies, approver task tracking, SLA breach detection
and escalation, and a hash-chained history of every transition.
"""

__version__ = "1.0.0"
