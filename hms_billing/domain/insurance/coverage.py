"""
Insurance coverage arithmetic.

Deductible is applied first, then the co-pay, and what remains is covered
by the insurer up to the policy's remaining annual maximum.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel

from hms_billing.core.exceptions import BusinessRuleError
from hms_billing.core.utils import HUNDRED, ZERO, to_decimal, to_money
from hms_billing.domain.insurance.models import PatientInsurance


class CoverageBreakdown(BaseModel):
    """Split of an amount between insurer and patient"""
    total_amount: Decimal
    deductible_applied: Decimal
    deductible_remaining: Decimal
    amount_after_deductible: Decimal
    co_pay_amount: Decimal
    insurance_coverage: Decimal
    patient_responsibility: Decimal
    annual_remaining: Optional[Decimal] = None  # None: no annual maximum


def split_coverage(
    amount,
    deductible_remaining,
    co_pay_amount=ZERO,
    co_pay_percentage=ZERO,
    annual_remaining=None
) -> CoverageBreakdown:
    """
    Split ``amount`` into insurer coverage and patient responsibility.

    A fixed co-pay takes precedence over a percentage co-pay; the percentage
    applies to the amount left after the deductible.
    """
    amount = to_money(amount)
    deductible_remaining = max(ZERO, to_money(deductible_remaining))

    deductible_applied = min(deductible_remaining, amount)
    after_deductible = amount - deductible_applied

    fixed_co_pay = to_money(co_pay_amount)
    if fixed_co_pay > 0:
        co_pay = min(fixed_co_pay, after_deductible)
    elif to_decimal(co_pay_percentage) > 0:
        co_pay = to_money(after_deductible * to_decimal(co_pay_percentage) / HUNDRED)
    else:
        co_pay = ZERO

    coverage = max(ZERO, after_deductible - co_pay)

    remaining_after = None
    if annual_remaining is not None:
        annual_remaining = max(ZERO, to_money(annual_remaining))
        coverage = min(coverage, annual_remaining)
        remaining_after = annual_remaining - coverage

    return CoverageBreakdown(
        total_amount=amount,
        deductible_applied=deductible_applied,
        deductible_remaining=deductible_remaining - deductible_applied,
        amount_after_deductible=after_deductible,
        co_pay_amount=co_pay,
        insurance_coverage=coverage,
        patient_responsibility=amount - coverage,
        annual_remaining=remaining_after,
    )


def annual_remaining(insurance: PatientInsurance) -> Optional[Decimal]:
    if insurance.annual_max_coverage is None:
        return None
    return max(ZERO, to_money(insurance.annual_max_coverage) - to_money(insurance.annual_used_amount))


def policy_problems(insurance: PatientInsurance, on_date: Optional[date] = None) -> list:
    """Reasons the policy cannot be used on ``on_date``; empty when usable"""
    on_date = on_date or date.today()
    problems = []
    if not insurance.is_active:
        problems.append("Insurance policy is not active.")
    if insurance.coverage_end_date and insurance.coverage_end_date < on_date:
        problems.append("Insurance coverage has expired.")
    if insurance.coverage_start_date and insurance.coverage_start_date > on_date:
        problems.append("Insurance coverage has not started yet.")
    provider = insurance.provider
    if provider is None or not provider.is_active:
        problems.append("Insurance provider is not active.")
    return problems


def ensure_policy_usable(insurance: PatientInsurance, on_date: Optional[date] = None) -> None:
    problems = policy_problems(insurance, on_date)
    if problems:
        raise BusinessRuleError(
            message=problems[0],
            details={"insurance_id": str(insurance.id), "problems": problems},
            error_code="INSURANCE_NOT_USABLE",
        )


def coverage_for_policy(insurance: PatientInsurance, amount) -> CoverageBreakdown:
    return split_coverage(
        amount,
        deductible_remaining=insurance.deductible_remaining,
        co_pay_amount=insurance.co_pay_amount,
        co_pay_percentage=insurance.co_pay_percentage,
        annual_remaining=annual_remaining(insurance),
    )
