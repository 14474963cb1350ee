from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import uuid
import logging

from hms_billing.core.permissions import Caller
from hms_billing.domain.audit.models import AuditLog, AuditAction, AuditSeverity


logger = logging.getLogger(__name__)


class AuditLogger:
    """Service for creating audit log entries"""

    @staticmethod
    async def log_billing_action(
        db: AsyncSession,
        action: AuditAction,
        module: str,
        description: str,
        caller: Optional[Caller],
        resource_type: Optional[str] = None,
        resource_id: Optional[uuid.UUID] = None,
        severity: AuditSeverity = AuditSeverity.LOW
    ) -> AuditLog:
        """
        Record a billing action.

        The entry joins the caller's unit of work, so it is only persisted
        when the operation it describes commits.
        """
        entry = AuditLog(
            action=action,
            module=module,
            description=description,
            severity=severity,
            resource_type=resource_type,
            resource_id=resource_id,
            user_id=caller.user_id if caller else None,
            username=caller.username if caller else None,
        )
        db.add(entry)
        await db.flush()

        logger.info(
            f"[{module}] {action.value}: {description}"
            + (f" (user={caller.username or caller.user_id})" if caller else "")
        )
        return entry

