import pytest
from decimal import Decimal
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from hms_billing.core.exceptions import (
    BusinessRuleError, CalculationError, ConflictError, ValidationError,
    billing_operation, create_error_response, map_exception_to_billing
)
from hms_billing.domain.billing.calculation import BillCalculationService
from hms_billing.infrastructure.database import in_transaction


class Probe:
    """Minimal service exposing ``db`` the way billing services do"""

    def __init__(self, db):
        self.db = db
        self.seen_nested = None

    @billing_operation("Outer step failed")
    async def outer(self, error=None):
        return await self.inner(error)

    @billing_operation("Inner step failed")
    async def inner(self, error=None):
        self.seen_nested = in_transaction(self.db)
        if error is not None:
            raise error
        return "done"

    @billing_operation("Failed to annotate bill")
    async def annotate(self, bill, notes):
        bill.notes = notes
        await self.db.flush()


@pytest.mark.unit
def test_with_prefix_keeps_class_and_code():
    error = ValidationError("Quantity must be greater than zero.", details={"field": "quantity"})
    prefixed = error.with_prefix("Failed to add manual item")

    assert isinstance(prefixed, ValidationError)
    assert prefixed.message == "Failed to add manual item: Quantity must be greater than zero."
    assert prefixed.status_code == 422
    assert prefixed.error_code == "VALIDATION_ERROR"
    assert prefixed.details == {"field": "quantity"}


@pytest.mark.unit
def test_map_exception_to_billing():
    assert isinstance(map_exception_to_billing(StaleDataError("version mismatch")), ConflictError)
    assert map_exception_to_billing(StaleDataError("x")).status_code == 409

    db_error = map_exception_to_billing(OperationalError("SELECT 1", {}, Exception("locked")))
    assert isinstance(db_error, CalculationError)
    assert db_error.error_code == "DATABASE_ERROR"

    unexpected = map_exception_to_billing(ZeroDivisionError("division by zero"))
    assert isinstance(unexpected, CalculationError)
    assert unexpected.error_code == "UNEXPECTED_ERROR"

    original = BusinessRuleError("Bill is already voided.")
    assert map_exception_to_billing(original) is original


@pytest.mark.unit
def test_create_error_response():
    response = create_error_response(BusinessRuleError("Payment is already voided."), request_id="abc")
    assert response["error"] == "BusinessRule Error"
    assert response["message"] == "Payment is already voided."
    assert response["error_code"] == "BUSINESS_RULE_ERROR"
    assert response["request_id"] == "abc"
    assert "timestamp" in response
    assert "details" not in response


async def test_nested_operation_joins_outer_unit(db):
    probe = Probe(db)
    assert await probe.outer() == "done"
    assert probe.seen_nested is True
    assert in_transaction(db) is False


async def test_outermost_operation_prefixes_once(db):
    """Test the error surfaces with only the outer operation's prefix"""
    probe = Probe(db)
    with pytest.raises(BusinessRuleError) as exc_info:
        await probe.outer(BusinessRuleError("Bill is already voided."))

    assert exc_info.value.message == "Outer step failed: Bill is already voided."
    assert in_transaction(db) is False


async def test_unexpected_error_becomes_calculation_error(db):
    probe = Probe(db)
    with pytest.raises(CalculationError) as exc_info:
        await probe.inner(ZeroDivisionError("division by zero"))

    assert exc_info.value.message == "Inner step failed: division by zero"
    assert exc_info.value.status_code == 500
    assert isinstance(exc_info.value.__cause__, ZeroDivisionError)


async def test_stale_bill_write_becomes_conflict(db, other_db, bill_with_items, caller):
    """Test a write based on an outdated bill version is refused with 409"""
    stale = await BillCalculationService(db).get_bill(bill_with_items.id)
    await db.commit()

    await BillCalculationService(other_db).apply_discount(bill_with_items.id, Decimal("10"), "percentage", caller)

    with pytest.raises(ConflictError) as exc_info:
        await Probe(db).annotate(stale, "Late note from another desk")

    assert exc_info.value.status_code == 409
    assert exc_info.value.message == "Failed to annotate bill: The record was modified by another transaction"

    fresh = await BillCalculationService(db).get_bill(bill_with_items.id)
    assert fresh.notes is None
    assert fresh.adjustment_discount == Decimal("20.00")
