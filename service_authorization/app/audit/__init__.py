"""
Audit package for the Authorization Service.

Audit sinks receive structured ``AuditEvent`` records for every
mutation and authorization decision. Delivery never blocks or fails
the operation that produced the event.
"""

from .sinks import AuditDispatcher, AuditSink, LoggingAuditSink, NullAuditSink

__all__ = ["AuditDispatcher", "AuditSink", "LoggingAuditSink", "NullAuditSink"]
