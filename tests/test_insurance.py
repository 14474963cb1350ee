import logging
import pytest
import uuid
from datetime import date, timedelta
from decimal import Decimal

from hms_billing.core.config import settings
from hms_billing.core.exceptions import BusinessRuleError, ValidationError
from hms_billing.domain.billing.models import BillPaymentStatus, PaymentMethod
from hms_billing.domain.billing.schemas import BillItemUpdate, ManualItemCreate, PaymentCreate
from hms_billing.domain.insurance.coverage import policy_problems, split_coverage
from hms_billing.domain.insurance.models import ClaimStatus, InsuranceProvider, PatientInsurance
from hms_billing.domain.insurance.schemas import (
    ClaimAppeal, ClaimCreate, ClaimDecision, InsuranceProviderCreate, PatientInsuranceCreate
)


# Coverage arithmetic

@pytest.mark.unit
def test_split_coverage_deductible_then_percentage_co_pay():
    """Test 1000 with a 200 deductible and 10% co-pay leaves 720 to the insurer"""
    breakdown = split_coverage(Decimal("1000"), Decimal("200"), co_pay_percentage=Decimal("10"))
    assert breakdown.deductible_applied == Decimal("200.00")
    assert breakdown.amount_after_deductible == Decimal("800.00")
    assert breakdown.co_pay_amount == Decimal("80.00")
    assert breakdown.insurance_coverage == Decimal("720.00")
    assert breakdown.patient_responsibility == Decimal("280.00")
    assert breakdown.deductible_remaining == Decimal("0.00")
    assert breakdown.annual_remaining is None


@pytest.mark.unit
def test_split_coverage_fixed_co_pay_wins():
    breakdown = split_coverage(
        Decimal("500"), Decimal("0"), co_pay_amount=Decimal("25"), co_pay_percentage=Decimal("10")
    )
    assert breakdown.co_pay_amount == Decimal("25.00")
    assert breakdown.insurance_coverage == Decimal("475.00")


@pytest.mark.unit
def test_split_coverage_annual_cap():
    breakdown = split_coverage(Decimal("1000"), Decimal("0"), annual_remaining=Decimal("300"))
    assert breakdown.insurance_coverage == Decimal("300.00")
    assert breakdown.patient_responsibility == Decimal("700.00")
    assert breakdown.annual_remaining == Decimal("0.00")


@pytest.mark.unit
def test_split_coverage_deductible_larger_than_amount():
    breakdown = split_coverage(Decimal("150"), Decimal("200"), co_pay_percentage=Decimal("10"))
    assert breakdown.insurance_coverage == Decimal("0.00")
    assert breakdown.patient_responsibility == Decimal("150.00")
    assert breakdown.deductible_remaining == Decimal("50.00")


@pytest.mark.unit
def test_policy_problems():
    today = date.today()
    usable = PatientInsurance(
        is_active=True,
        coverage_start_date=today - timedelta(days=1),
        coverage_end_date=None,
        provider=InsuranceProvider(name="NHM", code="NHM", is_active=True),
    )
    assert policy_problems(usable) == []

    expired = PatientInsurance(
        is_active=False,
        coverage_start_date=today - timedelta(days=400),
        coverage_end_date=today - timedelta(days=35),
        provider=InsuranceProvider(name="Old Mutual", code="OM", is_active=False),
    )
    assert policy_problems(expired) == [
        "Insurance policy is not active.",
        "Insurance coverage has expired.",
        "Insurance provider is not active.",
    ]

    future = PatientInsurance(
        is_active=True,
        coverage_start_date=today + timedelta(days=10),
        provider=InsuranceProvider(name="NHM", code="NHM2", is_active=True),
    )
    assert policy_problems(future) == ["Insurance coverage has not started yet."]


# Claims

async def _submitted_claim(claim_service, bill_id, policy_id, caller, claim_amount=None):
    created = await claim_service.create_claim(
        ClaimCreate(bill_id=bill_id, patient_insurance_id=policy_id, claim_amount=claim_amount), caller
    )
    await claim_service.submit_claim(created.data.id, caller)
    return created.data.id


@pytest.mark.insurance
async def test_calculate_insurance_coverage_on_bill(calculation_service, bill_service, insured_bill, policy, caller):
    result = await calculation_service.calculate_insurance_coverage(insured_bill.id, policy, caller)
    assert result.data.insurance_coverage == Decimal("720.00")
    assert result.data.patient_responsibility == Decimal("280.00")

    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.insurance_claim_amount == Decimal("720.00")
    assert bill.patient_responsibility == Decimal("280.00")


@pytest.mark.insurance
async def test_calculate_coverage_for_policy(claim_service, policy):
    breakdown = await claim_service.calculate_coverage(policy, Decimal("1000"))
    assert breakdown.insurance_coverage == Decimal("720.00")

    with pytest.raises(ValidationError):
        await claim_service.calculate_coverage(policy, Decimal("-1"))


@pytest.mark.insurance
async def test_create_claim_defaults_to_policy_coverage(claim_service, insured_bill, policy, caller):
    result = await claim_service.create_claim(ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy), caller)
    claim = result.data
    assert claim.status == ClaimStatus.DRAFT
    assert claim.claim_amount == Decimal("720.00")
    assert claim.claim_number.startswith("CLM-")


@pytest.mark.insurance
async def test_create_claim_above_bill_total_rejected(claim_service, insured_bill, policy, caller):
    with pytest.raises(ValidationError) as exc_info:
        await claim_service.create_claim(
            ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy, claim_amount=Decimal("1500")), caller
        )
    assert "cannot exceed bill total" in exc_info.value.message
    assert await claim_service.get_claims_for_bill(insured_bill.id) == []


@pytest.mark.insurance
async def test_claim_against_another_patients_policy(claim_service, insured_bill, caller):
    provider = await claim_service.register_provider(InsuranceProviderCreate(name="Sun Health", code="SUN"), caller)
    other = await claim_service.register_policy(
        PatientInsuranceCreate(
            patient_id=uuid.uuid4(), provider_id=provider.data["id"], policy_number="SUN-1",
            coverage_start_date=date.today() - timedelta(days=1),
        ),
        caller,
    )
    with pytest.raises(BusinessRuleError):
        await claim_service.create_claim(
            ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=other.data["id"]), caller
        )


@pytest.mark.insurance
async def test_submit_claim_updates_bill(claim_service, bill_service, insured_bill, policy, caller):
    created = await claim_service.create_claim(
        ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy), caller
    )
    result = await claim_service.submit_claim(created.data.id, caller)

    assert result.data["claim"].status == ClaimStatus.SUBMITTED
    assert result.data["claim"].submission_date is not None
    assert result.data["coverage"].insurance_coverage == Decimal("720.00")

    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.insurance_claim_amount == Decimal("720.00")
    assert bill.patient_responsibility == Decimal("280.00")

    with pytest.raises(BusinessRuleError) as exc_info:
        await claim_service.submit_claim(created.data.id, caller)
    assert "already been submitted" in exc_info.value.message


@pytest.mark.insurance
async def test_submit_fails_validation(claim_service, item_service, insured_bill, policy, caller):
    """Test a claim larger than the bill total can no longer be submitted"""
    created = await claim_service.create_claim(
        ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy, claim_amount=Decimal("900")), caller
    )
    items = await item_service.get_items(insured_bill.id)
    await item_service.remove_item(items[0].id, caller)

    with pytest.raises(ValidationError) as exc_info:
        await claim_service.submit_claim(created.data.id, caller)
    assert "Claim validation failed: Claim amount cannot exceed bill total" in exc_info.value.message
    assert (await claim_service.get_claim(created.data.id)).status == ClaimStatus.DRAFT


@pytest.mark.insurance
async def test_second_open_claim_rejected(claim_service, insured_bill, policy, caller):
    await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    second = await claim_service.create_claim(
        ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy, claim_amount=Decimal("100")), caller
    )
    with pytest.raises(BusinessRuleError) as exc_info:
        await claim_service.submit_claim(second.data.id, caller)
    assert "An open claim already exists for this bill." in exc_info.value.message


# Bill changes while a claim is with the insurer

async def _add_line(item_service, bill_id, caller, description, price):
    await item_service.add_manual_item(
        bill_id, ManualItemCreate(item_description=description, quantity=1, unit_price=price), caller
    )


async def _item_named(item_service, bill_id, description):
    return next(i for i in await item_service.get_items(bill_id) if i.item_description == description)


@pytest.mark.insurance
async def test_discount_below_submitted_claim_rejected(calculation_service, claim_service, bill_service, insured_bill, policy, caller):
    await _submitted_claim(claim_service, insured_bill.id, policy, caller, Decimal("900"))

    with pytest.raises(BusinessRuleError) as exc_info:
        await calculation_service.apply_discount(insured_bill.id, Decimal("50"), "percentage", caller)
    assert exc_info.value.error_code == "CLAIM_EXCEEDS_TOTAL"
    assert "would fall below the 900.00 claimed" in exc_info.value.message

    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.total_amount == Decimal("1000.00")
    assert bill.discount_type is None
    assert bill.patient_responsibility == Decimal("100.00")

    # A discount the claim still fits under goes through
    result = await calculation_service.apply_discount(insured_bill.id, Decimal("100"), "fixed", caller)
    assert result.data["totals"].total_amount == Decimal("900.00")
    assert (await bill_service.get_bill(insured_bill.id)).patient_responsibility == Decimal("0.00")


@pytest.mark.insurance
async def test_item_changes_below_submitted_claim_rejected(claim_service, item_service, bill_service, insured_bill, policy, caller):
    await _add_line(item_service, insured_bill.id, caller, "Ward stay", Decimal("500"))
    await _submitted_claim(claim_service, insured_bill.id, policy, caller, Decimal("1400"))
    surgery = await _item_named(item_service, insured_bill.id, "Appendectomy")

    with pytest.raises(BusinessRuleError) as exc_info:
        await item_service.remove_item(surgery.id, caller)
    assert exc_info.value.error_code == "CLAIM_EXCEEDS_TOTAL"

    with pytest.raises(BusinessRuleError):
        await item_service.update_item_total(surgery.id, caller, BillItemUpdate(unit_price=Decimal("850")))

    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.total_amount == Decimal("1500.00")
    assert bill.insurance_claim_amount == Decimal("1400.00")
    assert bill.patient_responsibility == Decimal("100.00")
    assert len(await item_service.get_items(insured_bill.id)) == 2


@pytest.mark.insurance
async def test_patient_responsibility_follows_bill_total(claim_service, item_service, bill_service, insured_bill, policy, caller):
    """Test the patient share is recomputed when the bill changes after submission"""
    await _add_line(item_service, insured_bill.id, caller, "Ward stay", Decimal("200"))
    await _submitted_claim(claim_service, insured_bill.id, policy, caller, Decimal("900"))
    assert (await bill_service.get_bill(insured_bill.id)).patient_responsibility == Decimal("300.00")

    ward = await _item_named(item_service, insured_bill.id, "Ward stay")
    await item_service.remove_item(ward.id, caller)
    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.total_amount == Decimal("1000.00")
    assert bill.patient_responsibility == Decimal("100.00")

    surgery = await _item_named(item_service, insured_bill.id, "Appendectomy")
    await item_service.update_item_total(surgery.id, caller, BillItemUpdate(unit_price=Decimal("950")))
    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.total_amount == Decimal("950.00")
    assert bill.patient_responsibility == Decimal("50.00")


@pytest.mark.insurance
async def test_void_blocked_by_claim_awaiting_decision(claim_service, bill_service, insured_bill, policy, caller):
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)

    with pytest.raises(BusinessRuleError) as exc_info:
        await bill_service.void_bill(insured_bill.id, "Patient transferred to another hospital", caller)
    assert "insurance claim awaiting a decision" in exc_info.value.message
    assert (await bill_service.get_bill(insured_bill.id)).voided_at is None

    await claim_service.process_response(
        claim_id, ClaimDecision(status="rejected", rejection_reason="Policy excludes transfers"), caller
    )
    voided = await bill_service.void_bill(insured_bill.id, "Patient transferred to another hospital", caller)
    assert voided.data.voided_at is not None


@pytest.mark.insurance
async def test_approved_claim_posts_insurance_payment(claim_service, bill_service, payment_service, insured_bill, policy, caller):
    """Test an approval pays the bill and uses up the policy deductible"""
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    pending = await claim_service.mark_pending(claim_id, caller)
    assert pending.data.status == ClaimStatus.PENDING

    result = await claim_service.process_response(
        claim_id,
        ClaimDecision(
            status="approved", approved_amount=Decimal("720"),
            deductible_amount=Decimal("200"), co_pay_amount=Decimal("80"),
        ),
        caller,
    )
    claim = result.data["claim"]
    payment = result.data["payment"]

    assert claim.status == ClaimStatus.APPROVED
    assert claim.approved_amount == Decimal("720.00")
    assert claim.approval_date is not None
    assert payment.amount == Decimal("720.00")
    assert payment.payment_method == PaymentMethod.INSURANCE
    assert payment.insurance_claim_id == claim_id
    assert result.data["bill_status"] == BillPaymentStatus.PARTIAL
    assert result.data["balance_due"] == Decimal("280.00")

    bill = await bill_service.get_bill(insured_bill.id)
    assert bill.insurance_approved_amount == Decimal("720.00")
    assert bill.amount_paid == Decimal("720.00")

    # Deductible now met: the next 1000 is covered less the 10% co-pay only
    breakdown = await claim_service.calculate_coverage(policy, Decimal("1000"))
    assert breakdown.deductible_applied == Decimal("0.00")
    assert breakdown.insurance_coverage == Decimal("900.00")

    stats = await payment_service.get_payment_statistics(insured_bill.id)
    assert stats.payment_methods == ["insurance"]


@pytest.mark.insurance
async def test_insurance_payment_capped_at_balance(claim_service, payment_service, insured_bill, policy, caller, caplog):
    await payment_service.process_payment(
        insured_bill.id, PaymentCreate(amount=Decimal("500"), payment_method="cash"), caller
    )
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)

    with caplog.at_level(logging.WARNING):
        result = await claim_service.process_response(
            claim_id, ClaimDecision(status="approved", approved_amount=Decimal("720")), caller
        )

    assert result.data["payment"].amount == Decimal("500.00")
    assert result.data["bill_status"] == BillPaymentStatus.PAID
    assert result.data["balance_due"] == Decimal("0.00")
    assert "difference was not posted" in caplog.text


@pytest.mark.insurance
async def test_approved_amount_above_claim_rejected(claim_service, bill_service, insured_bill, policy, caller):
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    with pytest.raises(ValidationError):
        await claim_service.process_response(
            claim_id, ClaimDecision(status="approved", approved_amount=Decimal("800")), caller
        )

    assert (await claim_service.get_claim(claim_id)).status == ClaimStatus.SUBMITTED
    assert (await bill_service.get_bill(insured_bill.id)).amount_paid == Decimal("0.00")


@pytest.mark.insurance
async def test_reported_deductible_above_remaining_rejected(claim_service, insured_bill, policy, caller):
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    with pytest.raises(BusinessRuleError):
        await claim_service.process_response(
            claim_id,
            ClaimDecision(status="approved", approved_amount=Decimal("500"), deductible_amount=Decimal("300")),
            caller,
        )


@pytest.mark.insurance
async def test_reject_appeal_and_approve(claim_service, bill_service, insured_bill, policy, caller):
    """Test a rejected claim can be appealed once and decided again"""
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller, Decimal("500"))

    with pytest.raises(ValidationError):
        await claim_service.process_response(claim_id, ClaimDecision(status="rejected"), caller)

    rejected = await claim_service.process_response(
        claim_id,
        ClaimDecision(status="rejected", rejection_reason="Pre-authorisation missing", rejection_codes=["PA-01"]),
        caller,
    )
    assert rejected.data["claim"].status == ClaimStatus.REJECTED
    assert rejected.data["claim"].rejection_codes == ["PA-01"]
    assert rejected.data["payment"] is None

    appealed = await claim_service.appeal_claim(
        claim_id,
        ClaimAppeal(reason="Authorisation was granted by phone", documents=[{"name": "call-log.pdf"}]),
        caller,
    )
    assert appealed.data.status == ClaimStatus.APPEALED
    assert appealed.data.appeal_count == 1

    with pytest.raises(BusinessRuleError) as exc_info:
        await claim_service.appeal_claim(claim_id, ClaimAppeal(reason="Again"), caller)
    assert "Only rejected claims can be appealed." in exc_info.value.message

    approved = await claim_service.process_response(
        claim_id, ClaimDecision(status="partially_approved", approved_amount=Decimal("400")), caller
    )
    assert approved.data["claim"].status == ClaimStatus.PARTIALLY_APPROVED
    assert approved.data["claim"].rejection_reason is None
    assert approved.data["payment"].amount == Decimal("400.00")
    assert (await bill_service.get_bill(insured_bill.id)).balance_due == Decimal("600.00")

    documents = await claim_service.generate_claim_documents(claim_id, caller)
    assert documents.data["appeal_documents"] == [{"name": "call-log.pdf"}]


@pytest.mark.insurance
async def test_appeal_of_approved_claim_rejected(claim_service, insured_bill, policy, caller):
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    await claim_service.process_response(
        claim_id, ClaimDecision(status="approved", approved_amount=Decimal("720")), caller
    )
    with pytest.raises(BusinessRuleError):
        await claim_service.appeal_claim(claim_id, ClaimAppeal(reason="More please"), caller)


@pytest.mark.insurance
async def test_close_claim(claim_service, insured_bill, policy, caller):
    draft = await claim_service.create_claim(
        ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy, claim_amount=Decimal("100")), caller
    )
    with pytest.raises(BusinessRuleError):
        await claim_service.close_claim(draft.data.id, caller)

    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    await claim_service.process_response(
        claim_id, ClaimDecision(status="approved", approved_amount=Decimal("720")), caller
    )
    closed = await claim_service.close_claim(claim_id, caller)
    assert closed.data.status == ClaimStatus.CLOSED

    with pytest.raises(BusinessRuleError):
        await claim_service.process_response(
            claim_id, ClaimDecision(status="approved", approved_amount=Decimal("1")), caller
        )


@pytest.mark.insurance
async def test_pending_review_required(monkeypatch, claim_service, insured_bill, policy, caller):
    """Test decisions wait for the pending step when the review setting is on"""
    monkeypatch.setattr(settings, "CLAIMS_REQUIRE_PENDING_REVIEW", True)
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)

    with pytest.raises(BusinessRuleError):
        await claim_service.process_response(
            claim_id, ClaimDecision(status="approved", approved_amount=Decimal("720")), caller
        )

    await claim_service.mark_pending(claim_id, caller)
    result = await claim_service.process_response(
        claim_id, ClaimDecision(status="approved", approved_amount=Decimal("720")), caller
    )
    assert result.data["claim"].status == ClaimStatus.APPROVED


@pytest.mark.insurance
async def test_generate_claim_documents(claim_service, insured_bill, policy, caller):
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    documents = (await claim_service.generate_claim_documents(claim_id, caller)).data

    assert documents["claim_form"]["provider_code"] == "NHM"
    assert documents["patient_info"]["policy_number"] == "NHM-000123"
    assert documents["bill_info"]["total_amount"] == "1000.00"
    assert len(documents["items"]) == 1
    assert documents["claim_summary"]["claim_amount"] == "720.00"


@pytest.mark.insurance
async def test_claim_statistics(claim_service, insured_bill, policy, caller):
    claim_id = await _submitted_claim(claim_service, insured_bill.id, policy, caller)
    await claim_service.process_response(
        claim_id, ClaimDecision(status="approved", approved_amount=Decimal("600")), caller
    )
    await claim_service.create_claim(
        ClaimCreate(bill_id=insured_bill.id, patient_insurance_id=policy, claim_amount=Decimal("50")), caller
    )

    stats = await claim_service.get_claim_statistics(policy)
    assert stats.total_claims == 2
    assert stats.total_claimed == Decimal("770.00")
    assert stats.total_approved == Decimal("600.00")
    assert stats.by_status["approved"] == 1
    assert stats.by_status["draft"] == 1
    assert stats.by_status["rejected"] == 0
