"""
Invoice Service

Assigns invoice numbers and assembles the data an invoice is rendered
from. Rendering itself (PDF, email) lives outside the billing core.
"""

from datetime import date
from typing import Any, Dict
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.events import AuditLogger
from hms_billing.core.exceptions import BusinessRuleError, billing_operation
from hms_billing.core.permissions import Caller, Permissions, require_permission
from hms_billing.core.utils import random_code, to_money
from hms_billing.domain.audit.models import AuditAction
from hms_billing.domain.billing.billing_settings import BillingSettingsService
from hms_billing.domain.billing.calculation import BillCalculationService, compute_line_discount
from hms_billing.domain.billing.models import Bill, PaymentStatus
from hms_billing.domain.billing.repository import BillRepository, PaymentRepository
from hms_billing.domain.billing.schemas import ServiceResult
from hms_billing.domain.insurance.repository import PatientInsuranceRepository

logger = logging.getLogger(__name__)

PAYMENT_METHOD_LABELS = {
    "cash": "Cash",
    "credit_card": "Credit Card",
    "debit_card": "Debit Card",
    "check": "Check",
    "bank_transfer": "Bank Transfer",
    "insurance": "Insurance",
    "online": "Online Payment",
}


def format_payment_method(method: str) -> str:
    return PAYMENT_METHOD_LABELS.get(method, method.replace("_", " ").capitalize())


class InvoiceService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.bill_repo = BillRepository(db)
        self.payment_repo = PaymentRepository(db)
        self.insurance_repo = PatientInsuranceRepository(db)
        self.calculator = BillCalculationService(db)
        self.billing_settings = BillingSettingsService(db)

    async def generate_invoice_number(self) -> str:
        """INV-YYYYMMDD-NNNN-XXXXXX where NNNN counts today's invoices"""
        today = date.today()
        sequence = await self.bill_repo.count_invoiced_on(today) + 1
        prefix = f"INV-{today.strftime('%Y%m%d')}-{sequence:04d}-"
        while True:
            candidate = prefix + random_code(6)
            if not await self.bill_repo.invoice_number_exists(candidate):
                return candidate

    @billing_operation("Failed to assign invoice number")
    async def assign_invoice_number(self, bill_id: uuid.UUID, caller: Caller) -> ServiceResult:
        """Give the bill an invoice number; a bill keeps the first one it gets"""
        require_permission(caller, Permissions.BILLING_EDIT)
        bill = await self.calculator.get_bill(bill_id, for_update=True)
        if bill.is_voided:
            raise BusinessRuleError("Cannot invoice a voided bill.")

        if not bill.invoice_number:
            await self.bill_repo.update(bill, {"invoice_number": await self.generate_invoice_number()})
            await AuditLogger.log_billing_action(
                self.db, AuditAction.UPDATE, "Billing",
                f"Assigned invoice #{bill.invoice_number} to bill #{bill.bill_number}",
                caller, resource_type="bill", resource_id=bill.id,
            )
        return ServiceResult(
            data={"bill_id": bill.id, "invoice_number": bill.invoice_number},
            message="Invoice number assigned successfully",
        )

    async def get_invoice_template(self, bill_id: uuid.UUID) -> Dict[str, Any]:
        bill = await self.calculator.get_bill(bill_id)
        return {
            "invoice": {
                "number": bill.invoice_number,
                "bill_number": bill.bill_number,
                "date": bill.bill_date.isoformat(),
                "due_date": bill.due_date.isoformat() if bill.due_date else None,
                "status": bill.payment_status.value,
                "voided": bill.is_voided,
            },
            "hospital": await self.billing_settings.hospital_info(),
            "insurance": await self._insurance_section(bill),
            "items": [
                {
                    "description": item.item_description,
                    "category": item.category.value,
                    "quantity": item.quantity,
                    "unit_price": to_money(item.unit_price),
                    "discount": compute_line_discount(
                        item.quantity, item.unit_price, item.discount_amount, item.discount_percentage
                    ),
                    "total": to_money(item.total_price),
                }
                for item in bill.items
            ],
            "summary": {
                "subtotal": to_money(bill.sub_total),
                "discount": to_money(bill.discount),
                "tax": to_money(bill.tax),
                "total": to_money(bill.total_amount),
                "amount_paid": to_money(bill.amount_paid),
                "balance_due": to_money(bill.balance_due),
            },
            "payments": [
                {
                    "date": payment.payment_date.date().isoformat(),
                    "method": format_payment_method(payment.payment_method.value),
                    "amount": to_money(payment.amount),
                    "transaction_id": payment.transaction_id,
                }
                for payment in await self.payment_repo.get_by_bill(bill.id, status=PaymentStatus.COMPLETED)
            ],
            "notes": bill.notes,
        }

    async def _insurance_section(self, bill: Bill):
        if bill.primary_insurance_id is None:
            return None
        insurance = await self.insurance_repo.get_by_id(bill.primary_insurance_id)
        if insurance is None:
            return None
        return {
            "provider": insurance.provider.name if insurance.provider else None,
            "policy_number": insurance.policy_number,
            "claim_amount": to_money(bill.insurance_claim_amount),
            "approved_amount": to_money(bill.insurance_approved_amount),
        }
