"""
Audit infrastructure for the delivery engine.

Records every mutating action (sends, failures, expirations, emergency stop)
for compliance review, without ever blocking the flow that produced it.
"""

from delivery_engine.infrastructure.audit.audit_sink import AuditSink

__all__ = ["AuditSink"]
