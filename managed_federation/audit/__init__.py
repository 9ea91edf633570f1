"""Audit logging package for the federation broker."""

from managed_federation.audit.writer import AuditEntry, AuditWriter

__all__ = ["AuditEntry", "AuditWriter"]
