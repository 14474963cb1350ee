from typing import Dict, Any, Optional
from functools import wraps
from datetime import datetime, timezone
from fastapi import status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from hms_billing.infrastructure.database import atomic, in_transaction
import logging

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for billing exceptions"""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.error_code = error_code
        super().__init__(self.message)

    def with_prefix(self, prefix: str) -> "BillingError":
        """Copy of this error with the operation prefix prepended to its message"""
        clone = self.__class__.__new__(self.__class__)
        BillingError.__init__(
            clone,
            message=f"{prefix}: {self.message}",
            status_code=self.status_code,
            details=self.details,
            error_code=self.error_code,
        )
        return clone


class ValidationError(BillingError):
    """Exception for invalid input (bad enum values, negative amounts, out of range percentages)"""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            error_code=error_code or "VALIDATION_ERROR"
        )


class BusinessRuleError(BillingError):
    """Exception for operations the current state of a bill, payment or claim does not allow"""

    def __init__(
        self,
        message: str = "Business rule violated",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
            error_code=error_code or "BUSINESS_RULE_ERROR"
        )


class AuthorizationError(BillingError):
    """Exception for authorization errors"""

    def __init__(
        self,
        message: str = "Access denied",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
            error_code=error_code or "AUTHORIZATION_ERROR"
        )


class NotFoundError(BillingError):
    """Exception for resource not found errors"""

    def __init__(
        self,
        message: str = "Resource not found",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
            error_code=error_code or "NOT_FOUND_ERROR"
        )


class ConflictError(BillingError):
    """Exception for concurrent modification of the same record"""

    def __init__(
        self,
        message: str = "Resource conflict",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details,
            error_code=error_code or "CONFLICT_ERROR"
        )


class CalculationError(BillingError):
    """Exception for unexpected failures while computing or persisting monetary fields"""

    def __init__(
        self,
        message: str = "Calculation failed",
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
            error_code=error_code or "CALCULATION_ERROR"
        )


class ErrorResponse(BaseModel):
    """Standard error response model"""
    error: str
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: Optional[str] = None
    request_id: Optional[str] = None


def create_error_response(
    exception: BillingError,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Create standardized error response"""
    response = ErrorResponse(
        error=exception.__class__.__name__.replace("Error", " Error").strip(),
        message=exception.message,
        error_code=exception.error_code,
        details=exception.details or None,
        timestamp=datetime.now(timezone.utc).isoformat(),
        request_id=request_id,
    )
    return response.model_dump(exclude_none=True)


def map_exception_to_billing(error: Exception) -> BillingError:
    """Map library and standard exceptions to billing exceptions"""
    if isinstance(error, BillingError):
        return error
    if isinstance(error, StaleDataError):
        return ConflictError(
            message="The record was modified by another transaction",
            details={"original_error": str(error)},
            error_code="STALE_RECORD"
        )
    if isinstance(error, SQLAlchemyError):
        return CalculationError(
            message="Database operation failed",
            details={"original_error": str(error)},
            error_code="DATABASE_ERROR"
        )
    return CalculationError(
        message=str(error) or error.__class__.__name__,
        details={"original_error": repr(error)},
        error_code="UNEXPECTED_ERROR"
    )


def billing_operation(prefix: str):
    """
    Decorator running a service method as one unit of work.

    The wrapped method's instance must expose the session as ``self.db``.
    The outermost call commits on success and rolls back on any failure;
    the failure is logged and re-raised as the same billing exception class
    with ``prefix`` prepended to its message. Calls made while a unit of
    work is already open join it and leave error handling to the caller.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            if in_transaction(self.db):
                async with atomic(self.db):
                    return await func(self, *args, **kwargs)

            try:
                async with atomic(self.db):
                    return await func(self, *args, **kwargs)
            except Exception as e:
                billing_error = map_exception_to_billing(e)
                logger.error(
                    f"{prefix} in {func.__qualname__}: {billing_error.message}",
                    exc_info=not isinstance(e, BillingError),
                )
                raise billing_error.with_prefix(prefix) from e

        return wrapper
    return decorator
