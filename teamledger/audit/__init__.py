"""Audit logging package."""

from teamledger.audit.logger import AuditLogger

__all__ = ["AuditLogger"]
