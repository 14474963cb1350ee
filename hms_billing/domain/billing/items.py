"""
Bill Item Service

Composes bill lines from the clinical sources that produce charges
(appointments, lab tests, pharmacy sales, department services) and from
manual entry. Each addition is guarded against billing the same source twice
on a bill, and every change recalculates the bill totals.
"""

from decimal import Decimal
from typing import List, Optional
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.events import AuditLogger
from hms_billing.core.exceptions import (
    BusinessRuleError, NotFoundError, ValidationError, billing_operation
)
from hms_billing.core.permissions import Caller, Permissions, require_permission
from hms_billing.core.utils import HUNDRED, to_decimal, to_money
from hms_billing.domain.audit.models import AuditAction
from hms_billing.domain.billing.calculation import BillCalculationService, compute_line_total
from hms_billing.domain.billing.models import (
    Bill, BillItem, BillPaymentStatus, ItemCategory, ItemType
)
from hms_billing.domain.billing.repository import BillItemRepository
from hms_billing.domain.billing.schemas import (
    AppointmentCharge, BillItemResponse, BillItemUpdate, DepartmentServiceCharge,
    LabTestCharge, ManualItemCreate, PharmacySale, ServiceResult
)

logger = logging.getLogger(__name__)

APPOINTMENT_SOURCE = "appointment"
LAB_TEST_SOURCE = "lab_test"
PHARMACY_SALE_SOURCE = "pharmacy_sale"
DEPARTMENT_SERVICE_SOURCE = "department_service"


class BillItemService:
    """Service layer for bill line items"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.item_repo = BillItemRepository(db)
        self.calculator = BillCalculationService(db)

    async def _get_open_bill(self, bill_id: uuid.UUID) -> Bill:
        bill = await self.calculator.get_bill(bill_id, for_update=True)
        if bill.is_voided:
            raise BusinessRuleError("Cannot change items on a voided bill.")
        return bill

    async def _get_unpaid_bill_for_item(self, item_id: uuid.UUID, action: str) -> tuple:
        item = await self.item_repo.get_by_id(item_id)
        if not item:
            raise NotFoundError(f"Bill item {item_id} not found")
        bill = await self._get_open_bill(item.bill_id)
        if bill.payment_status == BillPaymentStatus.PAID:
            raise BusinessRuleError(f"Cannot {action} a paid bill.")
        return item, bill

    async def _guard_duplicate(self, bill: Bill, source_type: str, source_id, label: str) -> None:
        if await self.item_repo.source_already_billed(bill.id, source_type, source_id):
            raise BusinessRuleError(
                f"{label} already added to this bill.",
                details={"source_type": source_type, "source_id": str(source_id)},
                error_code="DUPLICATE_BILL_ITEM",
            )

    async def _create_item(self, bill: Bill, caller: Caller, **fields) -> BillItem:
        fields.setdefault("discount_amount", Decimal("0.00"))
        fields.setdefault("discount_percentage", Decimal("0.00"))
        fields["total_price"] = compute_line_total(
            fields["quantity"], fields["unit_price"],
            fields["discount_amount"], fields["discount_percentage"]
        )
        return await self.item_repo.create({"bill_id": bill.id, "added_by": caller.user_id, **fields})

    async def _log_addition(self, bill: Bill, caller: Caller, description: str) -> None:
        await AuditLogger.log_billing_action(
            self.db, AuditAction.CREATE, "Billing", description,
            caller, resource_type="bill", resource_id=bill.id,
        )

    @billing_operation("Failed to add appointment fee")
    async def add_from_appointment(
        self,
        bill_id: uuid.UUID,
        charge: AppointmentCharge,
        caller: Caller,
        discount: Decimal = Decimal("0")
    ) -> ServiceResult:
        """Add the consultation fee of an appointment"""
        require_permission(caller, Permissions.BILLING_EDIT)
        bill = await self._get_open_bill(bill_id)
        await self._guard_duplicate(bill, APPOINTMENT_SOURCE, charge.appointment_id, "Appointment fee")

        fee = to_money(charge.consultation_fee)
        if fee <= 0:
            raise ValidationError("Appointment fee must be greater than zero.")
        discount = to_money(discount)
        if discount < 0:
            raise ValidationError("Discount amount cannot be negative.")
        if discount > fee:
            raise ValidationError(
                "Discount amount cannot exceed the appointment fee.",
                details={"discount": str(discount), "fee": str(fee)},
            )

        description = charge.description or "Consultation"
        if charge.doctor_name:
            description += f" - Dr. {charge.doctor_name}"
        if charge.appointment_date:
            description += f" ({charge.appointment_date.isoformat()})"

        item = await self._create_item(
            bill, caller,
            item_type=ItemType.APPOINTMENT,
            source_type=APPOINTMENT_SOURCE,
            source_id=str(charge.appointment_id),
            category=ItemCategory.MEDICAL,
            item_description=description,
            quantity=1,
            unit_price=fee,
            discount_amount=discount,
        )
        await self.calculator.recalculate(bill)
        await self._log_addition(
            bill, caller,
            f"Added appointment fee from appointment {charge.appointment_id} to bill #{bill.bill_number}. Amount: {fee}"
        )
        return ServiceResult(data=BillItemResponse.model_validate(item), message="Consultation fee added successfully")

    @billing_operation("Failed to add lab test fee")
    async def add_from_lab_test(self, bill_id: uuid.UUID, charge: LabTestCharge, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.BILLING_EDIT)
        bill = await self._get_open_bill(bill_id)
        await self._guard_duplicate(bill, LAB_TEST_SOURCE, charge.lab_test_id, "Lab test fee")

        cost = to_money(charge.price)
        if cost <= 0:
            raise ValidationError("Lab test cost must be greater than zero.")

        description = f"Lab Test: {charge.test_name}"
        if charge.test_code:
            description += f" ({charge.test_code})"

        item = await self._create_item(
            bill, caller,
            item_type=ItemType.LAB_TEST,
            source_type=LAB_TEST_SOURCE,
            source_id=str(charge.lab_test_id),
            category=ItemCategory.LABORATORY,
            item_description=description,
            quantity=1,
            unit_price=cost,
        )
        await self.calculator.recalculate(bill)
        await self._log_addition(
            bill, caller, f"Added lab test fee for {charge.test_name} to bill #{bill.bill_number}. Amount: {cost}"
        )
        return ServiceResult(data=BillItemResponse.model_validate(item), message="Lab test fee added successfully")

    @billing_operation("Failed to add pharmacy sale items")
    async def add_from_pharmacy_sale(self, bill_id: uuid.UUID, sale: PharmacySale, caller: Caller) -> ServiceResult:
        """Add one line per medicine of a pharmacy sale"""
        require_permission(caller, Permissions.BILLING_EDIT)
        bill = await self._get_open_bill(bill_id)
        await self._guard_duplicate(bill, PHARMACY_SALE_SOURCE, sale.sale_id, "Pharmacy sale items")

        if not sale.items:
            raise ValidationError("Sale has no items.")
        for line in sale.items:
            if line.quantity <= 0:
                raise ValidationError(f"Quantity for {line.medicine_name} must be greater than zero.")
            if to_money(line.unit_price) <= 0:
                raise ValidationError(f"Price for {line.medicine_name} must be greater than zero.")
            if to_money(line.discount_amount) < 0:
                raise ValidationError(f"Discount for {line.medicine_name} cannot be negative.")

        items = []
        for line in sale.items:
            items.append(await self._create_item(
                bill, caller,
                item_type=ItemType.PHARMACY,
                source_type=PHARMACY_SALE_SOURCE,
                source_id=str(sale.sale_id),
                category=ItemCategory.PHARMACY,
                item_description=f"Pharmacy: {line.medicine_name} (Qty: {line.quantity})",
                quantity=line.quantity,
                unit_price=to_money(line.unit_price),
                discount_amount=to_money(line.discount_amount),
            ))
        totals = await self.calculator.recalculate(bill)

        sale_total = sum((i.total_price for i in items), Decimal("0.00"))
        await self._log_addition(
            bill, caller,
            f"Added {len(items)} pharmacy items from sale {sale.invoice_number or sale.sale_id} "
            f"to bill #{bill.bill_number}. Total: {sale_total}"
        )
        return ServiceResult(
            data={"items": [BillItemResponse.model_validate(i) for i in items], "totals": totals},
            message="Pharmacy sale items added successfully",
        )

    @billing_operation("Failed to add department service fee")
    async def add_from_department_service(
        self,
        bill_id: uuid.UUID,
        service: DepartmentServiceCharge,
        caller: Caller
    ) -> ServiceResult:
        require_permission(caller, Permissions.BILLING_EDIT)
        bill = await self._get_open_bill(bill_id)
        await self._guard_duplicate(bill, DEPARTMENT_SERVICE_SOURCE, service.service_id, "Department service fee")

        if not service.is_active:
            raise BusinessRuleError("Department service is not active.")
        base_cost = to_money(service.base_cost)
        percentage = to_decimal(service.discount_percentage)
        if percentage < 0 or percentage > HUNDRED:
            raise ValidationError("Service discount percentage must be between 0 and 100.")
        if service.quantity <= 0:
            raise ValidationError("Quantity must be greater than zero.")
        if compute_line_total(service.quantity, base_cost, 0, percentage) <= 0:
            raise ValidationError("Service cost must be greater than zero.")

        description = f"Service: {service.name}"
        if service.department_name:
            description += f" ({service.department_name})"

        item = await self._create_item(
            bill, caller,
            item_type=ItemType.DEPARTMENT_SERVICE,
            source_type=DEPARTMENT_SERVICE_SOURCE,
            source_id=str(service.service_id),
            category=ItemCategory.SERVICE,
            item_description=description,
            quantity=service.quantity,
            unit_price=base_cost,
            discount_percentage=percentage,
        )
        await self.calculator.recalculate(bill)
        await self._log_addition(
            bill, caller,
            f"Added department service {service.name} to bill #{bill.bill_number}. Amount: {item.total_price}"
        )
        return ServiceResult(data=BillItemResponse.model_validate(item), message="Department service fee added successfully")

    @billing_operation("Failed to add manual item")
    async def add_manual_item(self, bill_id: uuid.UUID, data: ManualItemCreate, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.BILLING_EDIT)
        _validate_line(data.item_description, data.quantity, data.unit_price,
                       data.discount_amount, data.discount_percentage)
        bill = await self._get_open_bill(bill_id)

        item = await self._create_item(
            bill, caller,
            item_type=ItemType.MANUAL,
            source_type=None,
            source_id=None,
            category=data.category,
            item_description=data.item_description.strip(),
            quantity=data.quantity,
            unit_price=to_money(data.unit_price),
            discount_amount=to_money(data.discount_amount),
            discount_percentage=to_decimal(data.discount_percentage),
            notes=data.notes,
        )
        await self.calculator.recalculate(bill)
        await self._log_addition(
            bill, caller,
            f"Added manual item '{item.item_description}' to bill #{bill.bill_number}. Amount: {item.total_price}"
        )
        return ServiceResult(data=BillItemResponse.model_validate(item), message="Manual item added successfully")

    @billing_operation("Failed to remove bill item")
    async def remove_item(self, item_id: uuid.UUID, caller: Caller) -> ServiceResult:
        require_permission(caller, Permissions.BILLING_EDIT)
        item, bill = await self._get_unpaid_bill_for_item(item_id, "remove items from")

        description = item.item_description
        amount = to_money(item.total_price)
        if item in bill.items:
            bill.items.remove(item)
        await self.item_repo.delete(item)
        totals = await self.calculator.recalculate(bill)

        await AuditLogger.log_billing_action(
            self.db, AuditAction.DELETE, "Billing",
            f"Removed item '{description}' from bill #{bill.bill_number}. Amount: {amount}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(
            data={"removed_item": description, "amount": amount, "totals": totals},
            message="Bill item removed successfully",
        )

    @billing_operation("Failed to update bill item")
    async def update_item_total(
        self,
        item_id: uuid.UUID,
        caller: Caller,
        changes: Optional[BillItemUpdate] = None
    ) -> ServiceResult:
        """Apply optional field changes to an item and recompute its total"""
        require_permission(caller, Permissions.BILLING_EDIT)
        item, bill = await self._get_unpaid_bill_for_item(item_id, "update items on")

        update_data = changes.model_dump(exclude_none=True) if changes else {}
        merged = {
            "item_description": update_data.get("item_description", item.item_description),
            "quantity": update_data.get("quantity", item.quantity),
            "unit_price": update_data.get("unit_price", item.unit_price),
            "discount_amount": update_data.get("discount_amount", item.discount_amount),
            "discount_percentage": update_data.get("discount_percentage", item.discount_percentage),
        }
        _validate_line(**merged)
        if item.item_type != ItemType.MANUAL and to_money(merged["unit_price"]) <= 0:
            raise ValidationError("Unit price must be greater than zero.")

        old_total = to_money(item.total_price)
        merged["unit_price"] = to_money(merged["unit_price"])
        merged["discount_amount"] = to_money(merged["discount_amount"])
        merged["discount_percentage"] = to_decimal(merged["discount_percentage"])
        merged["total_price"] = compute_line_total(
            merged["quantity"], merged["unit_price"],
            merged["discount_amount"], merged["discount_percentage"]
        )
        await self.item_repo.update(item, merged)
        await self.calculator.recalculate(bill)

        await AuditLogger.log_billing_action(
            self.db, AuditAction.UPDATE, "Billing",
            f"Updated item '{item.item_description}' on bill #{bill.bill_number}. "
            f"Old total: {old_total}, New total: {item.total_price}",
            caller, resource_type="bill", resource_id=bill.id,
        )
        return ServiceResult(data=BillItemResponse.model_validate(item), message="Bill item updated successfully")

    async def get_items(self, bill_id: uuid.UUID) -> List[BillItemResponse]:
        items = await self.item_repo.get_by_bill(bill_id)
        return [BillItemResponse.model_validate(i) for i in items]


def _validate_line(item_description, quantity, unit_price, discount_amount, discount_percentage) -> None:
    if not item_description or not str(item_description).strip():
        raise ValidationError("Field 'item_description' is required.")
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be greater than zero.")
    if unit_price is None or to_decimal(unit_price) < 0:
        raise ValidationError("Unit price cannot be negative.")
    if to_decimal(discount_amount) < 0:
        raise ValidationError("Discount amount cannot be negative.")
    percentage = to_decimal(discount_percentage)
    if percentage < 0 or percentage > HUNDRED:
        raise ValidationError("Discount percentage must be between 0 and 100.")
