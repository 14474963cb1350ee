"""
Bill Calculation Service

Business logic for bill totals, discounts, tax, balance due and the
insurance/patient split of a bill. Every monetary field on a bill is written
here; other services call ``recalculate`` inside their own unit of work.
"""

from decimal import Decimal
from typing import Iterable, Optional
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.events import AuditLogger
from hms_billing.core.exceptions import (
    BusinessRuleError, NotFoundError, ValidationError, billing_operation
)
from hms_billing.core.permissions import Caller, Permissions, require_permission
from hms_billing.core.utils import HUNDRED, ZERO, to_decimal, to_money
from hms_billing.domain.audit.models import AuditAction
from hms_billing.domain.billing.billing_settings import BillingSettingsService
from hms_billing.domain.billing.models import (
    Bill, BillItem, BillPaymentStatus, DiscountType
)
from hms_billing.domain.billing.repository import (
    BillRepository, BillItemRepository, PaymentRepository
)
from hms_billing.domain.billing.schemas import BillTotals, ServiceResult
from hms_billing.domain.insurance.coverage import coverage_for_policy, ensure_policy_usable
from hms_billing.domain.insurance.repository import (
    AWAITING_DECISION_STATUSES, InsuranceClaimRepository, PatientInsuranceRepository
)

logger = logging.getLogger(__name__)


def compute_line_discount(quantity, unit_price, discount_amount=ZERO, discount_percentage=ZERO) -> Decimal:
    """Fixed plus percentage discount of one line, never more than the line's gross"""
    gross = to_decimal(quantity) * to_decimal(unit_price)
    discount = to_decimal(discount_amount) + gross * to_decimal(discount_percentage) / HUNDRED
    return to_money(min(max(discount, ZERO), gross))


def compute_line_total(quantity, unit_price, discount_amount=ZERO, discount_percentage=ZERO) -> Decimal:
    """quantity * unit_price less fixed and percentage discounts, floored at zero"""
    gross = to_money(to_decimal(quantity) * to_decimal(unit_price))
    return max(ZERO, gross - compute_line_discount(quantity, unit_price, discount_amount, discount_percentage))


def compute_adjustment_discount(sub_total, discount_type: Optional[DiscountType], discount_value) -> Decimal:
    """Bill level discount amount, capped at the subtotal"""
    if discount_type is None or discount_value is None:
        return ZERO
    sub_total = to_money(sub_total)
    if discount_type == DiscountType.PERCENTAGE:
        amount = to_money(sub_total * to_decimal(discount_value) / HUNDRED)
    else:
        amount = to_money(discount_value)
    return min(max(amount, ZERO), sub_total)


def compute_tax(taxable_amount, rate) -> Decimal:
    return to_money(to_decimal(taxable_amount) * to_decimal(rate) / HUNDRED)


def derive_payment_status(total_amount, amount_paid) -> BillPaymentStatus:
    """paid once nothing is owed, partial when something was paid, else pending"""
    total_amount = to_money(total_amount)
    amount_paid = to_money(amount_paid)
    if total_amount - amount_paid <= 0:
        return BillPaymentStatus.PAID
    if amount_paid > 0:
        return BillPaymentStatus.PARTIAL
    return BillPaymentStatus.PENDING


def summarise_items(items: Iterable[BillItem]) -> tuple:
    """(sub_total, line_discounts) over the given items"""
    sub_total = ZERO
    line_discounts = ZERO
    for item in items:
        sub_total += to_money(item.total_price)
        line_discounts += compute_line_discount(
            item.quantity, item.unit_price, item.discount_amount, item.discount_percentage
        )
    return to_money(sub_total), to_money(line_discounts)


class BillCalculationService:
    """Service layer for bill monetary calculations"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.bill_repo = BillRepository(db)
        self.item_repo = BillItemRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.insurance_repo = PatientInsuranceRepository(db)
        self.claim_repo = InsuranceClaimRepository(db)
        self.billing_settings = BillingSettingsService(db)

    async def get_bill(self, bill_id: uuid.UUID, for_update: bool = False) -> Bill:
        bill = await self.bill_repo.get_by_id(bill_id, for_update=for_update)
        if not bill:
            raise NotFoundError(f"Bill {bill_id} not found", details={"bill_id": str(bill_id)})
        return bill

    async def recalculate(self, bill: Bill) -> BillTotals:
        """
        Recompute and store every monetary field of ``bill``.

        Joins the caller's unit of work. Running it twice with no change to
        items or payments in between leaves the bill unchanged.
        """
        items = await self.item_repo.get_by_bill(bill.id)
        sub_total, line_discounts = summarise_items(items)

        adjustment = compute_adjustment_discount(sub_total, bill.discount_type, bill.discount_value)
        rate = bill.tax_rate if bill.tax_rate is not None else await self.billing_settings.tax_rate()

        taxable = sub_total - adjustment
        tax = compute_tax(taxable, rate)
        total_amount = taxable + tax

        await self._ensure_total_covers_claims(bill, total_amount)

        amount_paid = await self.payment_repo.net_amount_paid(bill.id)
        balance_due = max(ZERO, total_amount - amount_paid)

        update_data = {
            "sub_total": sub_total,
            "discount": line_discounts + adjustment,
            "adjustment_discount": adjustment,
            "tax": tax,
            "total_amount": total_amount,
            "amount_paid": amount_paid,
            "balance_due": balance_due,
            "payment_status": derive_payment_status(total_amount, amount_paid),
        }
        claim_amount = to_money(bill.insurance_claim_amount or ZERO)
        if claim_amount > 0:
            update_data["patient_responsibility"] = max(ZERO, total_amount - claim_amount)

        await self.bill_repo.update(bill, update_data)
        return BillTotals.model_validate(bill)

    async def _ensure_total_covers_claims(self, bill: Bill, total_amount: Decimal) -> None:
        """A bill total may not drop below a claim still waiting on the insurer"""
        claims = await self.claim_repo.get_open_for_bill(bill.id, statuses=AWAITING_DECISION_STATUSES)
        for claim in claims:
            if to_money(claim.claim_amount) > total_amount:
                raise BusinessRuleError(
                    f"Bill total of {total_amount} would fall below the {to_money(claim.claim_amount)} "
                    f"claimed on insurance claim #{claim.claim_number}.",
                    details={
                        "claim_id": str(claim.id),
                        "claim_amount": str(to_money(claim.claim_amount)),
                        "total_amount": str(total_amount),
                    },
                    error_code="CLAIM_EXCEEDS_TOTAL",
                )

    async def refresh_balance(self, bill: Bill) -> BillTotals:
        """Re-sum payments against the stored total without touching items"""
        amount_paid = await self.payment_repo.net_amount_paid(bill.id)
        total_amount = to_money(bill.total_amount)
        await self.bill_repo.update(bill, {
            "amount_paid": amount_paid,
            "balance_due": max(ZERO, total_amount - amount_paid),
            "payment_status": derive_payment_status(total_amount, amount_paid),
        })
        return BillTotals.model_validate(bill)

    @billing_operation("Failed to calculate bill totals")
    async def calculate_totals(self, bill_id: uuid.UUID, caller: Caller) -> ServiceResult:
        """Recalculate subtotal, discount, tax, total, amount paid and balance of a bill"""
        require_permission(caller, Permissions.BILLING_EDIT, Permissions.BILLING_READ)
        bill = await self.get_bill(bill_id, for_update=True)
        totals = await self.recalculate(bill)

        await AuditLogger.log_billing_action(
            self.db, AuditAction.UPDATE, "Billing",
            f"Calculated totals for bill #{bill.bill_number}: Subtotal: {totals.sub_total}, "
            f"Discount: {totals.discount}, Tax: {totals.tax}, Total: {totals.total_amount}, "
            f"Balance: {totals.balance_due}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(data=totals, message="Bill totals calculated successfully")

    @billing_operation("Failed to apply discount")
    async def apply_discount(
        self,
        bill_id: uuid.UUID,
        amount,
        discount_type: str,
        caller: Caller
    ) -> ServiceResult:
        """Apply a fixed or percentage discount to the whole bill"""
        require_permission(caller, Permissions.BILLING_DISCOUNT)

        try:
            discount_type = DiscountType(discount_type)
        except ValueError:
            raise ValidationError(
                'Invalid discount type. Must be "fixed" or "percentage".',
                details={"discount_type": str(discount_type)},
            )
        amount = to_decimal(amount)
        if amount < 0:
            raise ValidationError("Discount amount cannot be negative.")
        if discount_type == DiscountType.PERCENTAGE and amount > HUNDRED:
            raise ValidationError("Percentage discount cannot exceed 100%.")

        if not await self.billing_settings.discounts_enabled():
            raise BusinessRuleError("Discounts are disabled.")

        bill = await self.get_bill(bill_id, for_update=True)
        if bill.is_voided:
            raise BusinessRuleError("Cannot discount a voided bill.")
        if bill.payment_status == BillPaymentStatus.PAID and to_money(bill.amount_paid) > 0:
            raise BusinessRuleError("Cannot discount a bill that is already paid.")

        items = await self.item_repo.get_by_bill(bill.id)
        sub_total, _ = summarise_items(items)
        if discount_type == DiscountType.PERCENTAGE:
            discount_amount = to_money(sub_total * amount / HUNDRED)
        else:
            discount_amount = to_money(amount)
        if discount_amount > sub_total:
            raise ValidationError(
                "Discount amount cannot exceed the bill subtotal.",
                details={"discount_amount": str(discount_amount), "sub_total": str(sub_total)},
            )

        await self.bill_repo.update(bill, {"discount_type": discount_type, "discount_value": amount})
        totals = await self.recalculate(bill)

        await AuditLogger.log_billing_action(
            self.db, AuditAction.UPDATE, "Billing",
            f"Applied {discount_type.value} discount of {amount} to bill #{bill.bill_number}. "
            f"Discount amount: {discount_amount}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(
            data={
                "discount_type": discount_type.value,
                "discount_value": amount,
                "discount_amount": discount_amount,
                "totals": totals,
            },
            message="Discount applied successfully",
        )

    @billing_operation("Failed to calculate tax")
    async def calculate_tax(self, bill_id: uuid.UUID, rate, caller: Caller) -> ServiceResult:
        """Set an explicit tax rate (percent) on the bill and recalculate"""
        require_permission(caller, Permissions.BILLING_EDIT)
        rate = to_decimal(rate)
        if rate < 0:
            raise ValidationError("Tax rate cannot be negative.")
        if rate > HUNDRED:
            raise ValidationError("Tax rate cannot exceed 100%.")

        bill = await self.get_bill(bill_id, for_update=True)
        if bill.is_voided:
            raise BusinessRuleError("Cannot change tax on a voided bill.")

        await self.bill_repo.update(bill, {"tax_rate": rate})
        totals = await self.recalculate(bill)

        await AuditLogger.log_billing_action(
            self.db, AuditAction.UPDATE, "Billing",
            f"Calculated tax at {rate}% for bill #{bill.bill_number}. Tax amount: {totals.tax}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(data={"tax_rate": rate, "tax": totals.tax, "totals": totals},
                             message="Tax calculated successfully")

    @billing_operation("Failed to update balance")
    async def update_balance_due(self, bill_id: uuid.UUID, caller: Caller) -> ServiceResult:
        """Re-sum payments against the bill total"""
        require_permission(caller, Permissions.BILLING_EDIT, Permissions.PAYMENTS_RECORD)
        bill = await self.get_bill(bill_id, for_update=True)
        totals = await self.refresh_balance(bill)
        logger.info(
            f"Updated balance for bill #{bill.bill_number}. "
            f"Amount paid: {totals.amount_paid}, Balance due: {totals.balance_due}"
        )
        return ServiceResult(
            data={
                "amount_paid": totals.amount_paid,
                "balance_due": totals.balance_due,
                "payment_status": totals.payment_status,
            },
            message="Balance updated successfully",
        )

    @billing_operation("Failed to calculate insurance coverage")
    async def calculate_insurance_coverage(
        self,
        bill_id: uuid.UUID,
        insurance_id: uuid.UUID,
        caller: Caller
    ) -> ServiceResult:
        """Split the bill total between the insurer and the patient and store it on the bill"""
        require_permission(caller, Permissions.BILLING_EDIT, Permissions.CLAIMS_MANAGE)
        bill = await self.get_bill(bill_id, for_update=True)
        insurance = await self.insurance_repo.get_by_id(insurance_id)
        if not insurance:
            raise NotFoundError(f"Insurance policy {insurance_id} not found")
        if insurance.patient_id != bill.patient_id:
            raise BusinessRuleError("Insurance policy does not belong to the bill's patient.")
        ensure_policy_usable(insurance)

        breakdown = coverage_for_policy(insurance, bill.total_amount)
        await self.bill_repo.update(bill, {
            "primary_insurance_id": insurance.id,
            "insurance_claim_amount": breakdown.insurance_coverage,
            "patient_responsibility": breakdown.patient_responsibility,
        })

        await AuditLogger.log_billing_action(
            self.db, AuditAction.UPDATE, "Billing",
            f"Calculated insurance coverage for bill #{bill.bill_number}. "
            f"Coverage: {breakdown.insurance_coverage}, "
            f"Patient responsibility: {breakdown.patient_responsibility}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(data=breakdown, message="Insurance coverage calculated successfully")
