from typing import List, Optional
from pydantic import BaseModel, Field
import uuid

from hms_billing.core.exceptions import AuthorizationError


class Permissions:
    """Permission constants for the billing core"""

    # Bills
    BILLING_CREATE = "billing:create"
    BILLING_READ = "billing:read"
    BILLING_EDIT = "billing:edit"
    BILLING_DISCOUNT = "billing:discount"
    BILLING_VOID = "billing:void"

    # Payments
    PAYMENTS_RECORD = "payments:record"
    PAYMENTS_REFUND = "payments:refund"
    PAYMENTS_VOID = "payments:void"

    # Insurance
    CLAIMS_MANAGE = "claims:manage"
    CLAIMS_PROCESS = "claims:process"

    # System administration
    SYSTEM_ADMIN = "system:admin"


class Caller(BaseModel):
    """Identity of the user on whose behalf a service call is made"""
    user_id: uuid.UUID
    username: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)

    def has_permission(self, permission: str) -> bool:
        return Permissions.SYSTEM_ADMIN in self.permissions or permission in self.permissions


def require_permission(caller: Caller, *required_permissions: str) -> Caller:
    """Raise AuthorizationError unless the caller holds one of the permissions"""
    if not any(caller.has_permission(perm) for perm in required_permissions):
        raise AuthorizationError(
            message="Insufficient permissions",
            details={
                "user_id": str(caller.user_id),
                "required_permissions": list(required_permissions),
            },
        )
    return caller
