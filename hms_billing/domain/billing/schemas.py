from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from hms_billing.domain.billing.models import (
    BillPaymentStatus, DiscountType, ItemCategory, ItemType,
    PaymentMethod, PaymentStatus, RefundStatus, RefundType
)


class ServiceResult(BaseModel):
    """Outcome of a billing service call"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""


# Bills

class BillCreate(BaseModel):
    patient_id: UUID
    doctor_id: Optional[UUID] = None
    bill_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


class BillTotals(BaseModel):
    """Monetary fields of a bill after calculation"""
    sub_total: Decimal
    discount: Decimal
    adjustment_discount: Decimal
    tax: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    payment_status: BillPaymentStatus

    model_config = ConfigDict(from_attributes=True)


class BillResponse(BillTotals):
    id: UUID
    bill_number: str
    invoice_number: Optional[str] = None
    patient_id: UUID
    doctor_id: Optional[UUID] = None
    bill_date: date
    due_date: Optional[date] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    insurance_claim_amount: Decimal
    insurance_approved_amount: Decimal
    patient_responsibility: Optional[Decimal] = None
    last_payment_date: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    notes: Optional[str] = None


# Items: one typed charge per clinical source

class AppointmentCharge(BaseModel):
    appointment_id: UUID
    consultation_fee: Decimal
    doctor_name: Optional[str] = None
    appointment_date: Optional[date] = None
    description: Optional[str] = None


class LabTestCharge(BaseModel):
    lab_test_id: UUID
    test_name: str
    price: Decimal
    test_code: Optional[str] = None


class PharmacySaleItem(BaseModel):
    medicine_id: UUID
    medicine_name: str
    quantity: int = 1
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0")


class PharmacySale(BaseModel):
    sale_id: UUID
    invoice_number: Optional[str] = None
    items: List[PharmacySaleItem] = Field(default_factory=list)


class DepartmentServiceCharge(BaseModel):
    service_id: UUID
    name: str
    base_cost: Decimal
    department_name: Optional[str] = None
    discount_percentage: Decimal = Decimal("0")
    quantity: int = 1
    is_active: bool = True


class ManualItemCreate(BaseModel):
    item_description: str = ""
    quantity: int = 1
    unit_price: Decimal
    discount_amount: Decimal = Decimal("0")
    discount_percentage: Decimal = Decimal("0")
    category: ItemCategory = ItemCategory.OTHER
    notes: Optional[str] = None


class BillItemUpdate(BaseModel):
    item_description: Optional[str] = None
    quantity: Optional[int] = None
    unit_price: Optional[Decimal] = None
    discount_amount: Optional[Decimal] = None
    discount_percentage: Optional[Decimal] = None


class BillItemResponse(BaseModel):
    id: UUID
    bill_id: UUID
    item_type: ItemType
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    category: ItemCategory
    item_description: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    total_price: Decimal

    model_config = ConfigDict(from_attributes=True)


# Payments

class PaymentCreate(BaseModel):
    amount: Decimal
    payment_method: str
    transaction_id: Optional[str] = Field(None, max_length=40)
    reference_number: Optional[str] = None
    card_last_four: Optional[str] = Field(None, min_length=4, max_length=4)
    card_type: Optional[str] = None
    bank_name: Optional[str] = None
    check_number: Optional[str] = None
    amount_tendered: Optional[Decimal] = None
    insurance_claim_id: Optional[UUID] = None
    notes: Optional[str] = None


class PaymentResponse(BaseModel):
    id: UUID
    bill_id: UUID
    transaction_id: str
    amount: Decimal
    payment_method: PaymentMethod
    status: PaymentStatus
    payment_date: datetime
    reference_number: Optional[str] = None
    amount_tendered: Optional[Decimal] = None
    change_due: Optional[Decimal] = None
    insurance_claim_id: Optional[UUID] = None
    void_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class RefundResponse(BaseModel):
    id: UUID
    bill_id: UUID
    payment_id: UUID
    reference_number: str
    refund_amount: Decimal
    refund_type: RefundType
    refund_reason: str
    refund_method: PaymentMethod
    status: RefundStatus
    refund_date: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentStatistics(BaseModel):
    total_payments: int
    total_paid: Decimal
    refund_amount: Decimal
    last_payment_date: Optional[datetime] = None
    payment_methods: List[str] = Field(default_factory=list)


class StatusHistoryResponse(BaseModel):
    field_name: str
    status_from: Optional[str] = None
    status_to: str
    changed_by: Optional[UUID] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
