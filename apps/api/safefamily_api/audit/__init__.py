"""Audit trail for provisioning and operator actions."""

from safefamily_api.audit.log import SYSTEM_ACTOR, AuditAction, AuditLog, AuditRecord

__all__ = ["SYSTEM_ACTOR", "AuditAction", "AuditLog", "AuditRecord"]
