"""
Insurance Claim Service

Business logic for insurance claims against bills:
- Claim creation, validation and submission
- Recording the insurer's decision, including the insurance payment
- Appeals and closing
- Coverage calculation, claim documents and statistics
"""

from datetime import date
from typing import List, Optional
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.config import settings
from hms_billing.core.events import AuditLogger
from hms_billing.core.exceptions import (
    BusinessRuleError, NotFoundError, ValidationError, billing_operation
)
from hms_billing.core.permissions import Caller, Permissions, require_permission
from hms_billing.core.utils import ZERO, random_code, to_decimal, to_money, utcnow
from hms_billing.domain.audit.models import AuditAction
from hms_billing.domain.billing.calculation import BillCalculationService
from hms_billing.domain.billing.models import Bill, PaymentMethod
from hms_billing.domain.billing.payments import PaymentService
from hms_billing.domain.billing.repository import BillRepository
from hms_billing.domain.billing.schemas import PaymentCreate, PaymentResponse, ServiceResult
from hms_billing.domain.insurance.coverage import (
    CoverageBreakdown, coverage_for_policy, ensure_policy_usable, policy_problems
)
from hms_billing.domain.insurance.models import ClaimStatus, InsuranceClaim, PatientInsurance
from hms_billing.domain.insurance.repository import (
    InsuranceClaimRepository, InsuranceProviderRepository, PatientInsuranceRepository
)
from hms_billing.domain.insurance.schemas import (
    ClaimAppeal, ClaimCreate, ClaimDecision, ClaimStatistics, ClaimValidation,
    InsuranceClaimResponse, InsuranceProviderCreate, PatientInsuranceCreate
)

logger = logging.getLogger(__name__)

# A claim in any of these states has already gone to the insurer
SUBMITTED_STATUSES = (
    ClaimStatus.SUBMITTED,
    ClaimStatus.PENDING,
    ClaimStatus.APPROVED,
    ClaimStatus.PARTIALLY_APPROVED,
)
APPROVED_STATUSES = (ClaimStatus.APPROVED, ClaimStatus.PARTIALLY_APPROVED)
CLOSABLE_STATUSES = (
    ClaimStatus.APPROVED,
    ClaimStatus.PARTIALLY_APPROVED,
    ClaimStatus.REJECTED,
    ClaimStatus.APPEALED,
)


def decidable_statuses() -> tuple:
    """Claim states from which an insurer decision may be recorded"""
    if settings.CLAIMS_REQUIRE_PENDING_REVIEW:
        return (ClaimStatus.PENDING, ClaimStatus.APPEALED)
    return (ClaimStatus.SUBMITTED, ClaimStatus.PENDING, ClaimStatus.APPEALED)


class InsuranceClaimService:
    """Service layer for insurance policies and claims"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.claim_repo = InsuranceClaimRepository(db)
        self.insurance_repo = PatientInsuranceRepository(db)
        self.provider_repo = InsuranceProviderRepository(db)
        self.bill_repo = BillRepository(db)
        self.calculator = BillCalculationService(db)
        self.payment_service = PaymentService(db)

    async def _get_claim(self, claim_id: uuid.UUID, for_update: bool = False) -> InsuranceClaim:
        claim = await self.claim_repo.get_by_id(claim_id, for_update=for_update)
        if not claim:
            raise NotFoundError(f"Insurance claim {claim_id} not found", details={"claim_id": str(claim_id)})
        return claim

    async def _get_policy(self, insurance_id: uuid.UUID, for_update: bool = False) -> PatientInsurance:
        insurance = await self.insurance_repo.get_by_id(insurance_id, for_update=for_update)
        if not insurance:
            raise NotFoundError(
                f"Insurance policy {insurance_id} not found", details={"insurance_id": str(insurance_id)}
            )
        return insurance

    async def _generate_claim_number(self) -> str:
        prefix = f"CLM-{date.today().strftime('%Y%m%d')}-"
        while True:
            candidate = prefix + random_code(6)
            if not await self.claim_repo.claim_number_exists(candidate):
                return candidate

    # Policies

    @billing_operation("Failed to register insurance provider")
    async def register_provider(self, data: InsuranceProviderCreate, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        provider = await self.provider_repo.create(data.model_dump())
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CREATE, "Insurance",
            f"Registered insurance provider {provider.name} ({provider.code})",
            caller, resource_type="insurance_provider", resource_id=provider.id,
        )
        return ServiceResult(data={"id": provider.id, "code": provider.code},
                             message="Insurance provider registered successfully")

    @billing_operation("Failed to register insurance policy")
    async def register_policy(self, data: PatientInsuranceCreate, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        if data.coverage_end_date and data.coverage_end_date < data.coverage_start_date:
            raise ValidationError("Coverage end date cannot be before the start date.")
        if not await self.provider_repo.get_by_id(data.provider_id):
            raise NotFoundError(f"Insurance provider {data.provider_id} not found")

        insurance = await self.insurance_repo.create(data.model_dump())
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CREATE, "Insurance",
            f"Registered policy {insurance.policy_number} for patient {insurance.patient_id}",
            caller, resource_type="patient_insurance", resource_id=insurance.id,
        )
        return ServiceResult(data={"id": insurance.id, "policy_number": insurance.policy_number},
                             message="Insurance policy registered successfully")

    # Claims

    @billing_operation("Failed to create insurance claim")
    async def create_claim(self, data: ClaimCreate, caller: Caller) -> ServiceResult:
        """Open a draft claim for a bill under one of the patient's policies"""
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        bill = await self.calculator.get_bill(data.bill_id)
        if bill.is_voided:
            raise BusinessRuleError("Cannot claim against a voided bill.")
        insurance = await self._get_policy(data.patient_insurance_id)
        if insurance.patient_id != bill.patient_id:
            raise BusinessRuleError("Insurance policy does not belong to the bill's patient.")

        if data.claim_amount is None:
            ensure_policy_usable(insurance)
            claim_amount = coverage_for_policy(insurance, bill.total_amount).insurance_coverage
        else:
            claim_amount = to_money(data.claim_amount)
        if claim_amount <= 0:
            raise ValidationError("Claim amount must be greater than zero.")
        if claim_amount > to_money(bill.total_amount):
            raise ValidationError(
                "Claim amount cannot exceed bill total.",
                details={"claim_amount": str(claim_amount), "total_amount": str(bill.total_amount)},
            )

        claim = await self.claim_repo.create({
            "claim_number": await self._generate_claim_number(),
            "bill_id": bill.id,
            "patient_insurance_id": insurance.id,
            "claim_amount": claim_amount,
            "status": ClaimStatus.DRAFT,
            "notes": data.notes,
            "created_by": caller.user_id,
        })
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CLAIM, "Insurance",
            f"Created claim #{claim.claim_number} for bill #{bill.bill_number}. Amount: {claim_amount}",
            caller, resource_type="insurance_claim", resource_id=claim.id,
        )
        return ServiceResult(data=InsuranceClaimResponse.model_validate(claim),
                             message="Insurance claim created successfully")

    async def validate_claim(self, claim: InsuranceClaim) -> ClaimValidation:
        """Collect every reason the claim cannot be submitted"""
        errors = []
        bill: Optional[Bill] = await self.bill_repo.get_by_id(claim.bill_id)
        if bill is None:
            errors.append("Bill not found")
        elif bill.is_voided:
            errors.append("Bill has been voided")

        insurance = await self.insurance_repo.get_by_id(claim.patient_insurance_id)
        if insurance is None:
            errors.append("Patient insurance not found")
        else:
            errors.extend(p.rstrip(".") for p in policy_problems(insurance))
            if bill is not None and insurance.patient_id != bill.patient_id:
                errors.append("Insurance policy does not belong to the bill's patient")

        claim_amount = to_money(claim.claim_amount)
        if claim_amount <= 0:
            errors.append("Claim amount must be greater than zero")
        if bill is not None and claim_amount > to_money(bill.total_amount):
            errors.append("Claim amount cannot exceed bill total")

        return ClaimValidation(valid=not errors, errors=errors)

    @billing_operation("Failed to submit insurance claim")
    async def submit_claim(self, claim_id: uuid.UUID, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        claim = await self._get_claim(claim_id, for_update=True)
        if claim.status in SUBMITTED_STATUSES:
            raise BusinessRuleError("Claim has already been submitted.")
        if claim.status != ClaimStatus.DRAFT:
            raise BusinessRuleError(f"Cannot submit a claim in '{claim.status.value}' status.")

        validation = await self.validate_claim(claim)
        if not validation.valid:
            raise ValidationError(
                "Claim validation failed: " + ", ".join(validation.errors),
                details={"errors": validation.errors},
            )
        if await self.claim_repo.get_open_for_bill(claim.bill_id, exclude_claim_id=claim.id):
            raise BusinessRuleError("An open claim already exists for this bill.")

        bill = await self.calculator.get_bill(claim.bill_id, for_update=True)
        insurance = await self._get_policy(claim.patient_insurance_id)
        coverage = coverage_for_policy(insurance, bill.total_amount)
        claim_amount = to_money(claim.claim_amount)

        await self.claim_repo.update(claim, {
            "status": ClaimStatus.SUBMITTED,
            "submission_date": utcnow(),
            "submitted_by": caller.user_id,
        })
        # The patient owes whatever the claim does not ask the insurer for
        await self.bill_repo.update(bill, {
            "primary_insurance_id": insurance.id,
            "insurance_claim_amount": claim_amount,
            "patient_responsibility": to_money(bill.total_amount) - claim_amount,
        })

        await AuditLogger.log_billing_action(
            self.db, AuditAction.CLAIM, "Insurance",
            f"Submitted claim #{claim.claim_number} for bill #{bill.bill_number}. Amount: {claim.claim_amount}",
            caller, resource_type="insurance_claim", resource_id=claim.id,
        )
        return ServiceResult(
            data={"claim": InsuranceClaimResponse.model_validate(claim), "coverage": coverage},
            message="Insurance claim submitted successfully",
        )

    @billing_operation("Failed to update insurance claim")
    async def mark_pending(self, claim_id: uuid.UUID, caller: Caller) -> ServiceResult:
        """Record that the insurer has acknowledged the claim and is reviewing it"""
        require_permission(caller, Permissions.CLAIMS_MANAGE, Permissions.CLAIMS_PROCESS)
        claim = await self._get_claim(claim_id, for_update=True)
        if claim.status != ClaimStatus.SUBMITTED:
            raise BusinessRuleError("Only submitted claims can be marked as pending.")

        await self.claim_repo.update(claim, {"status": ClaimStatus.PENDING})
        logger.info(f"Claim #{claim.claim_number} is pending insurer review")
        return ServiceResult(data=InsuranceClaimResponse.model_validate(claim),
                             message="Claim marked as pending")

    @billing_operation("Failed to process insurance response")
    async def process_response(self, claim_id: uuid.UUID, decision: ClaimDecision, caller: Caller) -> ServiceResult:
        """
        Record the insurer's decision on a claim.

        An approval posts a completed insurance payment for the approved
        amount, capped at what is still owed on the bill, and adds the
        approval to the policy's annual usage and deductible met.
        """
        require_permission(caller, Permissions.CLAIMS_PROCESS)
        claim = await self._get_claim(claim_id, for_update=True)
        if claim.status not in decidable_statuses():
            raise BusinessRuleError(
                f"Cannot process a response for a claim in '{claim.status.value}' status.",
                details={"status": claim.status.value},
            )
        if claim.status == ClaimStatus.SUBMITTED:
            logger.warning(f"Claim #{claim.claim_number} decided without a pending review step")

        new_status = ClaimStatus(decision.status)
        bill = await self.calculator.get_bill(claim.bill_id, for_update=True)
        update_data = {
            "status": new_status,
            "response_date": decision.response_date or utcnow(),
            "processed_by": caller.user_id,
            "notes": decision.notes or claim.notes,
        }
        payment = None
        approved_amount = ZERO

        if new_status in APPROVED_STATUSES:
            if decision.approved_amount is None:
                raise ValidationError("Approved amount is required for an approved claim.")
            approved_amount = to_money(decision.approved_amount)
            if approved_amount > to_money(claim.claim_amount):
                raise ValidationError(
                    "Approved amount cannot exceed the claim amount.",
                    details={"approved_amount": str(approved_amount), "claim_amount": str(claim.claim_amount)},
                )

            insurance = await self._get_policy(claim.patient_insurance_id, for_update=True)
            deductible = to_money(decision.deductible_amount or 0)
            if deductible > to_money(insurance.deductible_remaining):
                raise BusinessRuleError(
                    "Deductible amount exceeds the policy's remaining deductible.",
                    details={"deductible_amount": str(deductible),
                             "deductible_remaining": str(insurance.deductible_remaining)},
                )

            update_data.update({
                "approved_amount": approved_amount,
                "deductible_amount": deductible,
                "co_pay_amount": to_money(decision.co_pay_amount or 0),
                "approval_date": utcnow(),
                "rejection_reason": None,
                "rejection_codes": None,
            })
            await self.bill_repo.update(bill, {
                "insurance_approved_amount": to_money(bill.insurance_approved_amount) + approved_amount,
            })

            payable = min(approved_amount, to_money(bill.balance_due))
            if payable > 0:
                payment = await self.payment_service.record_payment(
                    bill,
                    PaymentCreate(
                        amount=payable,
                        payment_method=PaymentMethod.INSURANCE.value,
                        insurance_claim_id=claim.id,
                        notes=f"Insurance payment for claim #{claim.claim_number}",
                    ),
                    caller,
                    enforce_desk_rules=False,
                )
            if payable < approved_amount:
                logger.warning(
                    f"Claim #{claim.claim_number} approved {approved_amount} but bill "
                    f"#{bill.bill_number} only owed {payable}; the difference was not posted"
                )

            await self.insurance_repo.update(insurance, {
                "annual_used_amount": to_money(insurance.annual_used_amount) + approved_amount,
                "deductible_met": to_money(insurance.deductible_met) + deductible,
            })
        else:
            if not decision.rejection_reason or not decision.rejection_reason.strip():
                raise ValidationError("A rejection reason is required for a rejected claim.")
            update_data.update({
                "rejection_reason": decision.rejection_reason.strip(),
                "rejection_codes": list(decision.rejection_codes),
            })

        await self.claim_repo.update(claim, update_data)
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CLAIM, "Insurance",
            f"Processed {new_status.value} response for claim #{claim.claim_number}. "
            f"Approved amount: {approved_amount}",
            caller, resource_type="insurance_claim", resource_id=claim.id,
        )
        return ServiceResult(
            data={
                "claim": InsuranceClaimResponse.model_validate(claim),
                "payment": PaymentResponse.model_validate(payment) if payment else None,
                "bill_status": bill.payment_status,
                "balance_due": bill.balance_due,
            },
            message="Insurance response processed successfully",
        )

    @billing_operation("Failed to appeal claim")
    async def appeal_claim(self, claim_id: uuid.UUID, appeal: ClaimAppeal, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        claim = await self._get_claim(claim_id, for_update=True)
        if claim.status != ClaimStatus.REJECTED:
            raise BusinessRuleError("Only rejected claims can be appealed.")

        reason = appeal.reason.strip()
        internal_notes = f"{claim.internal_notes}\n" if claim.internal_notes else ""
        update_data = {
            "status": ClaimStatus.APPEALED,
            "internal_notes": f"{internal_notes}Appeal submitted: {reason}",
            "appeal_count": (claim.appeal_count or 0) + 1,
        }
        if appeal.documents:
            documents = dict(claim.documents or {})
            documents["appeal_documents"] = list(documents.get("appeal_documents", [])) + appeal.documents
            update_data["documents"] = documents

        await self.claim_repo.update(claim, update_data)
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CLAIM, "Insurance",
            f"Submitted appeal for claim #{claim.claim_number}. Reason: {reason}",
            caller, resource_type="insurance_claim", resource_id=claim.id,
        )
        return ServiceResult(data=InsuranceClaimResponse.model_validate(claim),
                             message="Claim appeal submitted successfully")

    @billing_operation("Failed to close claim")
    async def close_claim(self, claim_id: uuid.UUID, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        claim = await self._get_claim(claim_id, for_update=True)
        if claim.status not in CLOSABLE_STATUSES:
            raise BusinessRuleError(f"Cannot close a claim in '{claim.status.value}' status.")

        previous = claim.status
        await self.claim_repo.update(claim, {"status": ClaimStatus.CLOSED})
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CLAIM, "Insurance",
            f"Closed claim #{claim.claim_number} (was {previous.value})",
            caller, resource_type="insurance_claim", resource_id=claim.id,
        )
        return ServiceResult(data=InsuranceClaimResponse.model_validate(claim), message="Claim closed successfully")

    async def calculate_coverage(self, insurance_id: uuid.UUID, amount) -> CoverageBreakdown:
        """Insurer/patient split of ``amount`` under a usable policy"""
        if to_decimal(amount) < 0:
            raise ValidationError("Amount cannot be negative.")
        insurance = await self._get_policy(insurance_id)
        ensure_policy_usable(insurance)
        return coverage_for_policy(insurance, amount)

    @billing_operation("Failed to generate claim documents")
    async def generate_claim_documents(self, claim_id: uuid.UUID, caller: Caller) -> ServiceResult:
        """Build the claim form data and store it on the claim"""
        require_permission(caller, Permissions.CLAIMS_MANAGE)
        claim = await self._get_claim(claim_id, for_update=True)
        bill = await self.calculator.get_bill(claim.bill_id)
        insurance = await self._get_policy(claim.patient_insurance_id)
        provider = insurance.provider

        documents = {
            "claim_form": {
                "title": "Insurance Claim Form",
                "claim_number": claim.claim_number,
                "submission_date": claim.submission_date.date().isoformat() if claim.submission_date else None,
                "provider_name": provider.name if provider else None,
                "provider_code": provider.code if provider else None,
            },
            "patient_info": {
                "patient_id": str(bill.patient_id),
                "policy_number": insurance.policy_number,
                "policy_holder_name": insurance.policy_holder_name,
                "relationship": insurance.relationship_to_patient,
            },
            "bill_info": {
                "bill_number": bill.bill_number,
                "bill_date": bill.bill_date.isoformat(),
                "sub_total": str(to_money(bill.sub_total)),
                "discount": str(to_money(bill.discount)),
                "tax": str(to_money(bill.tax)),
                "total_amount": str(to_money(bill.total_amount)),
            },
            "items": [
                {
                    "description": item.item_description,
                    "category": item.category.value,
                    "quantity": item.quantity,
                    "unit_price": str(to_money(item.unit_price)),
                    "total": str(to_money(item.total_price)),
                }
                for item in bill.items
            ],
            "claim_summary": {
                "claim_amount": str(to_money(claim.claim_amount)),
                "deductible_amount": str(to_money(insurance.deductible_amount)),
                "deductible_met": str(to_money(insurance.deductible_met)),
                "co_pay_amount": str(to_money(insurance.co_pay_amount)),
                "co_pay_percentage": str(to_decimal(insurance.co_pay_percentage)),
            },
        }
        existing = claim.documents or {}
        if "appeal_documents" in existing:
            documents["appeal_documents"] = existing["appeal_documents"]

        await self.claim_repo.update(claim, {"documents": documents})
        logger.info(f"Generated documents for claim #{claim.claim_number}")
        return ServiceResult(data=documents, message="Claim documents generated successfully")

    async def get_claim(self, claim_id: uuid.UUID) -> InsuranceClaimResponse:
        return InsuranceClaimResponse.model_validate(await self._get_claim(claim_id))

    async def get_claims_for_bill(self, bill_id: uuid.UUID) -> List[InsuranceClaimResponse]:
        claims = await self.claim_repo.get_by_bill(bill_id)
        return [InsuranceClaimResponse.model_validate(c) for c in claims]

    async def get_claim_statistics(self, patient_insurance_id: uuid.UUID) -> ClaimStatistics:
        by_status = {status.value: 0 for status in ClaimStatus}
        total_claims = 0
        total_claimed = ZERO
        total_approved = ZERO
        for status, count, claimed, approved in await self.claim_repo.status_totals(patient_insurance_id):
            status = ClaimStatus(status)
            by_status[status.value] = count
            total_claims += count
            total_claimed += to_money(claimed)
            if status in APPROVED_STATUSES:
                total_approved += to_money(approved)
        return ClaimStatistics(
            total_claims=total_claims,
            total_claimed=total_claimed,
            total_approved=total_approved,
            by_status=by_status,
        )
