from sqlalchemy import Column, String, DateTime, Text, Enum, Uuid
from hms_billing.infrastructure.database import Base
from hms_billing.core.utils import utcnow
import uuid
import enum


class AuditAction(str, enum.Enum):
    """Audit action types"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"
    VOID = "VOID"
    CLAIM = "CLAIM"


class AuditSeverity(str, enum.Enum):
    """Audit severity levels"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class AuditLog(Base):
    """Activity log of billing operations"""
    __tablename__ = "billing_audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    action = Column(Enum(AuditAction), nullable=False, index=True)
    module = Column(String(50), nullable=False, index=True)
    description = Column(Text, nullable=False)
    severity = Column(Enum(AuditSeverity), nullable=False, default=AuditSeverity.LOW)

    resource_type = Column(String(50), nullable=True)
    resource_id = Column(Uuid, nullable=True, index=True)

    user_id = Column(Uuid, nullable=True, index=True)
    username = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
