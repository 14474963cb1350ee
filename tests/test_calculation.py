import pytest
import uuid
from decimal import Decimal

from hms_billing.core.exceptions import AuthorizationError, BusinessRuleError, ValidationError
from hms_billing.core.permissions import Caller
from hms_billing.domain.billing.billing_settings import BillingSettingsService
from hms_billing.domain.billing.calculation import (
    compute_adjustment_discount, compute_line_discount, compute_line_total,
    compute_tax, derive_payment_status
)
from hms_billing.domain.billing.models import BillPaymentStatus, DiscountType
from hms_billing.domain.billing.schemas import PaymentCreate


@pytest.mark.unit
def test_line_total_applies_fixed_and_percentage_discount():
    """Test 2 x 100 less 10 and 10% totals 170"""
    assert compute_line_total(2, Decimal("100"), Decimal("10"), Decimal("10")) == Decimal("170.00")
    assert compute_line_discount(2, Decimal("100"), Decimal("10"), Decimal("10")) == Decimal("30.00")


@pytest.mark.unit
def test_line_total_never_negative():
    """Test a discount larger than the line floors the total at zero"""
    assert compute_line_discount(1, Decimal("50"), Decimal("40"), Decimal("50")) == Decimal("50.00")
    assert compute_line_total(1, Decimal("50"), Decimal("40"), Decimal("50")) == Decimal("0.00")


@pytest.mark.unit
def test_adjustment_discount():
    assert compute_adjustment_discount(Decimal("200"), DiscountType.PERCENTAGE, Decimal("10")) == Decimal("20.00")
    assert compute_adjustment_discount(Decimal("200"), DiscountType.FIXED, Decimal("500")) == Decimal("200.00")
    assert compute_adjustment_discount(Decimal("200"), None, None) == Decimal("0.00")


@pytest.mark.unit
def test_tax_rounds_half_up():
    assert compute_tax(Decimal("180"), Decimal("7.5")) == Decimal("13.50")
    assert compute_tax(Decimal("0.10"), Decimal("5")) == Decimal("0.01")


@pytest.mark.unit
@pytest.mark.parametrize("total,paid,expected", [
    (Decimal("100"), Decimal("0"), BillPaymentStatus.PENDING),
    (Decimal("100"), Decimal("40"), BillPaymentStatus.PARTIAL),
    (Decimal("100"), Decimal("100"), BillPaymentStatus.PAID),
    (Decimal("0"), Decimal("0"), BillPaymentStatus.PAID),
])
def test_derive_payment_status(total, paid, expected):
    assert derive_payment_status(total, paid) == expected


@pytest.mark.billing
async def test_calculate_totals(calculation_service, bill_with_items, caller):
    """Test totals are summed from the bill items"""
    result = await calculation_service.calculate_totals(bill_with_items.id, caller)
    totals = result.data

    assert result.success is True
    assert totals.sub_total == Decimal("200.00")
    assert totals.discount == Decimal("30.00")
    assert totals.tax == Decimal("0.00")
    assert totals.total_amount == Decimal("200.00")
    assert totals.balance_due == Decimal("200.00")
    assert totals.payment_status == BillPaymentStatus.PENDING


@pytest.mark.billing
async def test_calculate_totals_is_idempotent(calculation_service, bill_with_items, caller):
    first = await calculation_service.calculate_totals(bill_with_items.id, caller)
    second = await calculation_service.calculate_totals(bill_with_items.id, caller)
    assert first.data == second.data


@pytest.mark.billing
async def test_calculate_totals_requires_permission(calculation_service, bill_with_items):
    nobody = Caller(user_id=uuid.uuid4(), permissions=[])
    with pytest.raises(AuthorizationError) as exc_info:
        await calculation_service.calculate_totals(bill_with_items.id, nobody)
    assert exc_info.value.message.startswith("Failed to calculate bill totals: ")
    assert exc_info.value.status_code == 403


@pytest.mark.billing
async def test_balance_clamped_at_zero(calculation_service, payment_service, bill_with_items, caller):
    """Test balance due is never negative once a discount drops the total below what was paid"""
    await payment_service.process_payment(
        bill_with_items.id, PaymentCreate(amount=Decimal("120.00"), payment_method="cash"), caller
    )
    result = await calculation_service.apply_discount(bill_with_items.id, Decimal("100"), "fixed", caller)
    totals = result.data["totals"]

    assert totals.total_amount == Decimal("100.00")
    assert totals.amount_paid == Decimal("120.00")
    assert totals.balance_due == Decimal("0.00")
    assert totals.payment_status == BillPaymentStatus.PAID


@pytest.mark.billing
async def test_calculate_tax(calculation_service, bill_with_items, caller):
    result = await calculation_service.calculate_tax(bill_with_items.id, Decimal("10"), caller)
    totals = result.data["totals"]
    assert totals.tax == Decimal("20.00")
    assert totals.total_amount == Decimal("220.00")
    assert totals.balance_due == Decimal("220.00")


@pytest.mark.billing
async def test_negative_tax_rate_rejected(calculation_service, bill_with_items, caller):
    with pytest.raises(ValidationError):
        await calculation_service.calculate_tax(bill_with_items.id, Decimal("-1"), caller)


@pytest.mark.billing
async def test_configured_tax_rate_used(db, calculation_service, bill_with_items, caller):
    await BillingSettingsService(db).set("default_tax_rate", Decimal("5"))
    await db.commit()

    totals = (await calculation_service.calculate_totals(bill_with_items.id, caller)).data
    assert totals.tax == Decimal("10.00")
    assert totals.total_amount == Decimal("210.00")


@pytest.mark.billing
async def test_apply_percentage_discount(calculation_service, bill_with_items, caller):
    """Test tax is charged on the subtotal less the bill level discount only"""
    await calculation_service.calculate_tax(bill_with_items.id, Decimal("10"), caller)
    result = await calculation_service.apply_discount(bill_with_items.id, Decimal("10"), "percentage", caller)
    totals = result.data["totals"]

    assert result.data["discount_amount"] == Decimal("20.00")
    assert totals.adjustment_discount == Decimal("20.00")
    assert totals.discount == Decimal("50.00")
    assert totals.tax == Decimal("18.00")
    assert totals.total_amount == Decimal("198.00")


@pytest.mark.billing
async def test_apply_fixed_discount(calculation_service, bill_with_items, caller):
    result = await calculation_service.apply_discount(bill_with_items.id, Decimal("25"), "fixed", caller)
    assert result.data["totals"].total_amount == Decimal("175.00")


@pytest.mark.billing
async def test_discount_over_100_percent_rejected(calculation_service, bill_service, bill_with_items, caller):
    """Test a 110% discount is refused and the bill is left untouched"""
    before = await bill_service.get_bill(bill_with_items.id)

    with pytest.raises(ValidationError) as exc_info:
        await calculation_service.apply_discount(bill_with_items.id, Decimal("110"), "percentage", caller)
    assert "cannot exceed 100%" in exc_info.value.message

    after = await bill_service.get_bill(bill_with_items.id)
    assert after.discount_type is None
    assert after.discount == before.discount
    assert after.total_amount == before.total_amount


@pytest.mark.billing
@pytest.mark.parametrize("amount,discount_type", [
    (Decimal("-5"), "fixed"),
    (Decimal("250"), "fixed"),
    (Decimal("10"), "coupon"),
])
async def test_invalid_discounts_rejected(calculation_service, bill_with_items, caller, amount, discount_type):
    with pytest.raises(ValidationError):
        await calculation_service.apply_discount(bill_with_items.id, amount, discount_type, caller)


@pytest.mark.billing
async def test_discounts_disabled(db, calculation_service, bill_with_items, caller):
    await BillingSettingsService(db).set("enable_discounts", False)
    await db.commit()

    with pytest.raises(BusinessRuleError):
        await calculation_service.apply_discount(bill_with_items.id, Decimal("5"), "fixed", caller)


@pytest.mark.billing
async def test_update_balance_due(calculation_service, payment_service, bill_with_items, caller):
    await payment_service.process_payment(
        bill_with_items.id, PaymentCreate(amount=Decimal("80.00"), payment_method="debit_card"), caller
    )
    result = await calculation_service.update_balance_due(bill_with_items.id, caller)
    assert result.data["amount_paid"] == Decimal("80.00")
    assert result.data["balance_due"] == Decimal("120.00")
    assert result.data["payment_status"] == BillPaymentStatus.PARTIAL
