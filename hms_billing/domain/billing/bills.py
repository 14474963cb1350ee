"""
Bill Service

Creation, lookup and voiding of bills, plus access to their status trail.
Monetary fields are left to BillCalculationService.
"""

from datetime import date, timedelta
from typing import List
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.events import AuditLogger
from hms_billing.core.exceptions import BusinessRuleError, ValidationError, billing_operation
from hms_billing.core.permissions import Caller, Permissions, require_permission
from hms_billing.core.utils import random_code, utcnow
from hms_billing.domain.audit.models import AuditAction, AuditSeverity
from hms_billing.domain.billing.billing_settings import BillingSettingsService
from hms_billing.domain.billing.calculation import BillCalculationService
from hms_billing.domain.billing.models import BillPaymentStatus, PaymentStatus
from hms_billing.domain.billing.repository import (
    BillRepository, BillStatusHistoryRepository, PaymentRepository
)
from hms_billing.domain.billing.schemas import (
    BillCreate, BillResponse, ServiceResult, StatusHistoryResponse
)
from hms_billing.domain.insurance.repository import (
    AWAITING_DECISION_STATUSES, InsuranceClaimRepository
)

logger = logging.getLogger(__name__)

MIN_VOID_REASON_LENGTH = 10


class BillService:
    """Service layer for the bill lifecycle"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.bill_repo = BillRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.history_repo = BillStatusHistoryRepository(db)
        self.claim_repo = InsuranceClaimRepository(db)
        self.calculator = BillCalculationService(db)
        self.billing_settings = BillingSettingsService(db)

    async def generate_bill_number(self) -> str:
        """BL-YYYYMMDD-XXXX, retried until unused"""
        prefix = f"BL-{date.today().strftime('%Y%m%d')}-"
        while True:
            candidate = prefix + random_code(4)
            if not await self.bill_repo.bill_number_exists(candidate):
                return candidate

    @billing_operation("Failed to create bill")
    async def create_bill(self, data: BillCreate, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.BILLING_CREATE)

        bill_date = data.bill_date or date.today()
        due_date = data.due_date
        if due_date is None:
            due_date = bill_date + timedelta(days=await self.billing_settings.payment_due_days())
        if due_date < bill_date:
            raise ValidationError("Due date cannot be before the bill date.")

        bill = await self.bill_repo.create({
            "bill_number": await self.generate_bill_number(),
            "patient_id": data.patient_id,
            "doctor_id": data.doctor_id,
            "created_by": caller.user_id,
            "bill_date": bill_date,
            "due_date": due_date,
            "payment_status": BillPaymentStatus.PENDING,
            "notes": data.notes,
        })
        await self.history_repo.create({
            "bill_id": bill.id,
            "field_name": "payment_status",
            "status_from": None,
            "status_to": BillPaymentStatus.PENDING.value,
            "changed_by": caller.user_id,
            "reason": "Bill created",
        })
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CREATE, "Billing",
            f"Created bill #{bill.bill_number} for patient {bill.patient_id}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(data=BillResponse.model_validate(bill), message="Bill created successfully")

    async def get_bill(self, bill_id: uuid.UUID) -> BillResponse:
        bill = await self.calculator.get_bill(bill_id)
        return BillResponse.model_validate(bill)

    @billing_operation("Failed to void bill")
    async def void_bill(self, bill_id: uuid.UUID, reason: str, caller: Caller) -> ServiceResult:
        """
        Void a bill.

        A voided bill keeps its items and totals for the record but accepts
        no further items, discounts or payments. Bills with completed
        payments must have those payments refunded or voided first, and
        claims still with the insurer must be decided or closed.
        """
        require_permission(caller, Permissions.BILLING_VOID)
        reason = (reason or "").strip()
        if len(reason) < MIN_VOID_REASON_LENGTH:
            raise ValidationError(
                f"Void reason must be at least {MIN_VOID_REASON_LENGTH} characters."
            )

        bill = await self.calculator.get_bill(bill_id, for_update=True)
        if bill.is_voided:
            raise BusinessRuleError("Bill is already voided.")

        completed = await self.payment_repo.get_by_bill(bill.id, status=PaymentStatus.COMPLETED)
        if completed:
            raise BusinessRuleError(
                "Cannot void a bill with completed payments. Refund or void the payments first.",
                details={"completed_payments": len(completed)},
            )

        open_claims = await self.claim_repo.get_open_for_bill(bill.id, statuses=AWAITING_DECISION_STATUSES)
        if open_claims:
            raise BusinessRuleError(
                "Cannot void a bill with an insurance claim awaiting a decision. Record the insurer's response first.",
                details={"open_claims": [c.claim_number for c in open_claims]},
            )

        await self.bill_repo.update(bill, {
            "voided_at": utcnow(),
            "voided_by": caller.user_id,
            "void_reason": reason,
        })
        await self.history_repo.create({
            "bill_id": bill.id,
            "field_name": "voided",
            "status_from": bill.payment_status.value,
            "status_to": "voided",
            "changed_by": caller.user_id,
            "reason": reason,
        })
        await AuditLogger.log_billing_action(
            self.db, AuditAction.VOID, "Billing",
            f"Voided bill #{bill.bill_number}. Reason: {reason}",
            caller, resource_type="bill", resource_id=bill.id, severity=AuditSeverity.HIGH,
        )
        return ServiceResult(data=BillResponse.model_validate(bill), message="Bill voided successfully")

    async def get_status_history(self, bill_id: uuid.UUID) -> List[StatusHistoryResponse]:
        await self.calculator.get_bill(bill_id)
        entries = await self.history_repo.get_by_bill(bill_id)
        return [StatusHistoryResponse.model_validate(e) for e in entries]
