"""
Payment Service

Business logic for recording payments against a bill, refunding and voiding
them. Each operation is all-or-nothing: the payment row, the bill balance and
the status history entry are written in the same unit of work.
"""

from datetime import date
from decimal import Decimal
from typing import Optional
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.events import AuditLogger
from hms_billing.core.exceptions import (
    BusinessRuleError, NotFoundError, ValidationError, billing_operation
)
from hms_billing.core.permissions import Caller, Permissions, require_permission
from hms_billing.core.utils import ZERO, random_code, to_decimal, to_money, utcnow
from hms_billing.domain.audit.models import AuditAction, AuditSeverity
from hms_billing.domain.billing.billing_settings import BillingSettingsService
from hms_billing.domain.billing.calculation import BillCalculationService, derive_payment_status
from hms_billing.domain.billing.models import (
    Bill, BillPaymentStatus, Payment, PaymentMethod, PaymentStatus, RefundStatus, RefundType
)
from hms_billing.domain.billing.repository import (
    BillStatusHistoryRepository, PaymentRepository, RefundRepository
)
from hms_billing.domain.billing.schemas import (
    PaymentCreate, PaymentResponse, PaymentStatistics, RefundResponse, ServiceResult
)

logger = logging.getLogger(__name__)


def calculate_change(amount_tendered, amount_due) -> Decimal:
    """Change owed on a cash payment"""
    amount_tendered = to_money(amount_tendered)
    amount_due = to_money(amount_due)
    if amount_tendered < amount_due:
        raise ValidationError("Amount tendered is less than amount due.")
    return amount_tendered - amount_due


class PaymentService:
    """Service layer for payments, refunds and voids"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.payment_repo = PaymentRepository(db)
        self.refund_repo = RefundRepository(db)
        self.history_repo = BillStatusHistoryRepository(db)
        self.calculator = BillCalculationService(db)
        self.billing_settings = BillingSettingsService(db)

    async def _generate_transaction_id(self) -> str:
        prefix = f"TXN-{date.today().strftime('%Y%m%d')}-"
        while True:
            candidate = prefix + random_code(8)
            if not await self.payment_repo.transaction_id_exists(candidate):
                return candidate

    async def _generate_refund_reference(self) -> str:
        prefix = f"RFD-{date.today().strftime('%Y%m%d')}-"
        while True:
            candidate = prefix + random_code(6)
            if not await self.refund_repo.reference_number_exists(candidate):
                return candidate

    async def _get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.payment_repo.get_by_id(payment_id, for_update=True)
        if not payment:
            raise NotFoundError(f"Payment {payment_id} not found", details={"payment_id": str(payment_id)})
        return payment

    async def _record_status(
        self,
        bill: Bill,
        status_from: Optional[BillPaymentStatus],
        caller: Caller,
        reason: str,
        details: Optional[dict] = None
    ) -> None:
        await self.history_repo.create({
            "bill_id": bill.id,
            "field_name": "payment_status",
            "status_from": status_from.value if status_from else None,
            "status_to": bill.payment_status.value,
            "changed_by": caller.user_id,
            "reason": reason,
            "details": details,
        })

    async def _validate_method(self, method: str) -> PaymentMethod:
        try:
            payment_method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(
                f"Invalid payment method '{method}'.",
                details={"valid_methods": [m.value for m in PaymentMethod]},
            )
        if payment_method.value not in await self.billing_settings.accepted_payment_methods():
            raise BusinessRuleError(f"Payment method '{method}' is not accepted.")
        return payment_method

    async def record_payment(
        self,
        bill: Bill,
        data: PaymentCreate,
        caller: Caller,
        enforce_desk_rules: bool = True
    ) -> Payment:
        """
        Validate and store a completed payment against an already locked bill.

        Joins the caller's unit of work; used directly by claim processing to
        post insurer payments. With ``enforce_desk_rules`` off, the accepted
        method list, the minimum amount and the partial payment switch are
        not applied.
        """
        if enforce_desk_rules:
            payment_method = await self._validate_method(data.payment_method)
        else:
            payment_method = PaymentMethod(data.payment_method)

        if bill.is_voided:
            raise BusinessRuleError("Cannot process payment for a voided bill.")

        amount = to_money(data.amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero.")

        balance_due = to_money(bill.balance_due)
        if amount > balance_due:
            raise BusinessRuleError(
                "Payment amount exceeds the balance due.",
                details={"amount": str(amount), "balance_due": str(balance_due)},
                error_code="OVERPAYMENT",
            )

        settles_bill = amount == balance_due
        if not settles_bill and enforce_desk_rules:
            if not await self.billing_settings.partial_payments_enabled():
                raise BusinessRuleError("Partial payments are not allowed.")
            minimum = to_money(await self.billing_settings.minimum_payment_amount())
            if amount < minimum:
                raise BusinessRuleError(f"Payment amount must be at least {minimum}.")

        change_due = None
        amount_tendered = None
        if data.amount_tendered is not None:
            amount_tendered = to_money(data.amount_tendered)
            if payment_method == PaymentMethod.CASH:
                change_due = calculate_change(amount_tendered, amount)

        transaction_id = data.transaction_id
        if transaction_id:
            if await self.payment_repo.transaction_id_exists(transaction_id):
                raise BusinessRuleError(f"Transaction {transaction_id} has already been recorded.")
        else:
            transaction_id = await self._generate_transaction_id()

        payment = await self.payment_repo.create({
            "bill_id": bill.id,
            "transaction_id": transaction_id,
            "amount": amount,
            "payment_method": payment_method,
            "status": PaymentStatus.COMPLETED,
            "payment_date": utcnow(),
            "reference_number": data.reference_number,
            "card_last_four": data.card_last_four,
            "card_type": data.card_type,
            "bank_name": data.bank_name,
            "check_number": data.check_number,
            "amount_tendered": amount_tendered,
            "change_due": change_due,
            "insurance_claim_id": data.insurance_claim_id,
            "received_by": caller.user_id,
            "notes": data.notes,
        })

        status_from = bill.payment_status
        await self.calculator.refresh_balance(bill)
        bill.last_payment_date = payment.payment_date
        await self.db.flush()

        await self._record_status(
            bill, status_from, caller,
            f"Payment of {amount} received via {payment_method.value}",
            details={"payment_id": str(payment.id), "amount": str(amount)},
        )
        await AuditLogger.log_billing_action(
            self.db, AuditAction.PAYMENT, "Billing",
            f"Processed payment of {amount} for bill #{bill.bill_number} via {payment_method.value}. "
            f"Transaction: {transaction_id}",
            caller, resource_type="payment", resource_id=payment.id,
        )
        return payment

    @billing_operation("Failed to process payment")
    async def process_payment(self, bill_id: uuid.UUID, data: PaymentCreate, caller: Caller) -> ServiceResult:
        """Record a completed payment and update the bill balance"""
        require_permission(caller, Permissions.PAYMENTS_RECORD)
        bill = await self.calculator.get_bill(bill_id, for_update=True)
        payment = await self.record_payment(bill, data, caller)
        return ServiceResult(
            data={
                "payment": PaymentResponse.model_validate(payment),
                "change_due": payment.change_due or ZERO,
                "bill_status": bill.payment_status,
                "balance_due": bill.balance_due,
            },
            message="Payment processed successfully",
        )

    @billing_operation("Failed to process refund")
    async def process_refund(
        self,
        payment_id: uuid.UUID,
        amount,
        reason: str,
        caller: Caller
    ) -> ServiceResult:
        """Refund part or all of a completed payment"""
        require_permission(caller, Permissions.PAYMENTS_REFUND)
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required.")

        payment = await self._get_payment(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise BusinessRuleError("Can only refund completed payments.")

        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero.")
        payment_amount = to_money(payment.amount)
        if amount > payment_amount:
            raise BusinessRuleError("Refund amount cannot exceed the original payment amount.")

        existing_refunds = await self.refund_repo.sum_completed_for_payment(payment.id)
        available = payment_amount - existing_refunds
        if amount > available:
            raise BusinessRuleError(
                f"Only {available} is available for refund.",
                details={"available": str(available), "requested": str(amount)},
                error_code="REFUND_EXCEEDS_AVAILABLE",
            )

        bill = await self.calculator.get_bill(payment.bill_id, for_update=True)
        now = utcnow()
        fully_refunded = existing_refunds + amount >= payment_amount

        refund = await self.refund_repo.create({
            "bill_id": bill.id,
            "payment_id": payment.id,
            "reference_number": await self._generate_refund_reference(),
            "refund_amount": amount,
            "refund_type": RefundType.FULL if fully_refunded and existing_refunds == 0 else RefundType.PARTIAL,
            "refund_reason": reason.strip(),
            "refund_method": payment.payment_method,
            "refund_date": now,
            "status": RefundStatus.COMPLETED,
            "requested_by": caller.user_id,
            "processed_by": caller.user_id,
            "processed_at": now,
        })
        if fully_refunded:
            await self.payment_repo.update(payment, {"status": PaymentStatus.REFUNDED})

        status_from = bill.payment_status
        await self.calculator.refresh_balance(bill)
        await self._record_status(
            bill, status_from, caller,
            f"Refund of {amount} processed. Reason: {reason.strip()}",
            details={"payment_id": str(payment.id), "refund_id": str(refund.id)},
        )
        await AuditLogger.log_billing_action(
            self.db, AuditAction.REFUND, "Billing",
            f"Processed refund of {amount} for payment #{payment.transaction_id}. Reason: {reason.strip()}",
            caller, resource_type="payment", resource_id=payment.id, severity=AuditSeverity.MEDIUM,
        )
        return ServiceResult(
            data={
                "refund": RefundResponse.model_validate(refund),
                "payment_status": payment.status,
                "bill_status": bill.payment_status,
                "balance_due": bill.balance_due,
            },
            message="Refund processed successfully",
        )

    @billing_operation("Failed to void payment")
    async def void_payment(self, payment_id: uuid.UUID, reason: str, caller: Caller) -> ServiceResult:
        """Void a payment so it no longer counts towards the bill"""
        require_permission(caller, Permissions.PAYMENTS_VOID)
        if not reason or not reason.strip():
            raise ValidationError("A void reason is required.")

        payment = await self._get_payment(payment_id)
        if payment.status == PaymentStatus.VOIDED:
            raise BusinessRuleError("Payment is already voided.")

        bill = await self.calculator.get_bill(payment.bill_id, for_update=True)
        await self.payment_repo.update(payment, {
            "status": PaymentStatus.VOIDED,
            "voided_at": utcnow(),
            "voided_by": caller.user_id,
            "void_reason": reason.strip(),
        })

        status_from = bill.payment_status
        await self.calculator.refresh_balance(bill)
        await self._record_status(
            bill, status_from, caller,
            f"Payment voided. Reason: {reason.strip()}",
            details={"payment_id": str(payment.id)},
        )
        await AuditLogger.log_billing_action(
            self.db, AuditAction.VOID, "Billing",
            f"Voided payment #{payment.transaction_id} for bill #{bill.bill_number}. Reason: {reason.strip()}",
            caller, resource_type="payment", resource_id=payment.id, severity=AuditSeverity.HIGH,
        )
        return ServiceResult(
            data={
                "payment": PaymentResponse.model_validate(payment),
                "bill_status": bill.payment_status,
                "balance_due": bill.balance_due,
            },
            message="Payment voided successfully",
        )

    async def update_bill_status(self, bill: Bill) -> BillPaymentStatus:
        """Bring the stored payment status in line with amount paid vs total"""
        old_status = bill.payment_status
        new_status = derive_payment_status(bill.total_amount, bill.amount_paid)
        if new_status != old_status:
            bill.payment_status = new_status
            await self.db.flush()
            logger.info(
                f"Bill #{bill.bill_number} status changed from {old_status.value} to {new_status.value}"
            )
        return new_status

    async def get_payment_statistics(self, bill_id: uuid.UUID) -> PaymentStatistics:
        payments = await self.payment_repo.get_by_bill(bill_id, status=PaymentStatus.COMPLETED)
        methods = []
        for payment in payments:
            if payment.payment_method.value not in methods:
                methods.append(payment.payment_method.value)
        return PaymentStatistics(
            total_payments=len(payments),
            total_paid=to_money(sum((to_decimal(p.amount) for p in payments), ZERO)),
            refund_amount=await self.refund_repo.sum_completed_for_bill(bill_id),
            last_payment_date=max((p.payment_date for p in payments), default=None),
            payment_methods=methods,
        )
