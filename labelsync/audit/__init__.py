"""Audit trail for reconcile runs."""

from labelsync.audit.logger import AuditEvent, AuditLogger, AuditRun, AuditSummary

__all__ = ["AuditEvent", "AuditLogger", "AuditRun", "AuditSummary"]
