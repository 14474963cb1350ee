# Audit trail of billing actions
from hms_billing.domain.audit.models import AuditAction, AuditLog, AuditSeverity

__all__ = [
    "AuditAction",
    "AuditLog",
    "AuditSeverity",
]
