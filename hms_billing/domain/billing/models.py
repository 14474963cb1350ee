"""
Billing Domain Models

Implements the database models for:
- Bills and their line items
- Payments and refunds against a bill
- Bill status history
- Runtime billing settings
"""

from decimal import Decimal

from sqlalchemy import (
    Column, String, Date, Boolean, DateTime, ForeignKey,
    Integer, Numeric, Text, Enum, JSON, CheckConstraint, Index, Uuid
)
from sqlalchemy.orm import relationship
from hms_billing.infrastructure.database import Base
from hms_billing.core.utils import utcnow
import uuid
import enum


class BillPaymentStatus(str, enum.Enum):
    """Settlement state of a bill, derived from amount paid vs total"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class DiscountType(str, enum.Enum):
    """Bill level discount type"""
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class ItemType(str, enum.Enum):
    """Source a bill item was composed from"""
    APPOINTMENT = "appointment"
    LAB_TEST = "lab_test"
    PHARMACY = "pharmacy"
    DEPARTMENT_SERVICE = "department_service"
    MANUAL = "manual"


class ItemCategory(str, enum.Enum):
    """Reporting category of a bill item"""
    MEDICAL = "medical"
    LABORATORY = "laboratory"
    PHARMACY = "pharmacy"
    PROCEDURE = "procedure"
    SERVICE = "service"
    OTHER = "other"


class PaymentMethod(str, enum.Enum):
    """Accepted payment methods"""
    CASH = "cash"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"
    ONLINE = "online"
    INSURANCE = "insurance"


class PaymentStatus(str, enum.Enum):
    """Payment record status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    VOIDED = "voided"


class RefundType(str, enum.Enum):
    FULL = "full"
    PARTIAL = "partial"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class SettingDataType(str, enum.Enum):
    """Storage type of a billing setting value"""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    JSON = "json"


class Bill(Base):
    """Financial record aggregating the charges of one patient encounter"""
    __tablename__ = "bills"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_number = Column(String(32), nullable=False, unique=True, index=True)
    invoice_number = Column(String(40), nullable=True, unique=True)

    patient_id = Column(Uuid, nullable=False, index=True)
    doctor_id = Column(Uuid, nullable=True)
    created_by = Column(Uuid, nullable=True)
    primary_insurance_id = Column(Uuid, ForeignKey("patient_insurances.id"), nullable=True)

    bill_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)

    # Monetary fields, written only by BillCalculationService
    sub_total = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_type = Column(Enum(DiscountType), nullable=True)
    discount_value = Column(Numeric(12, 2), nullable=True)
    adjustment_discount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_rate = Column(Numeric(5, 2), nullable=True)  # None: use the configured rate
    tax = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    amount_paid = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    balance_due = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    payment_status = Column(
        Enum(BillPaymentStatus), nullable=False, default=BillPaymentStatus.PENDING, index=True
    )

    # Insurance split
    insurance_claim_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    insurance_approved_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    patient_responsibility = Column(Numeric(12, 2), nullable=True)

    notes = Column(Text, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)

    voided_at = Column(DateTime, nullable=True)
    voided_by = Column(Uuid, nullable=True)
    void_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "BillItem", back_populates="bill", cascade="all, delete-orphan",
        lazy="selectin", order_by="BillItem.created_at"
    )
    payments = relationship(
        "Payment", back_populates="bill", cascade="all, delete-orphan",
        lazy="selectin", order_by="Payment.payment_date"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("balance_due >= 0", name="check_bill_balance_non_negative"),
        CheckConstraint("sub_total >= 0", name="check_bill_sub_total_non_negative"),
    )

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None


class BillItem(Base):
    """One billable line on a bill"""
    __tablename__ = "bill_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_id = Column(Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)

    item_type = Column(Enum(ItemType), nullable=False)
    source_type = Column(String(50), nullable=True)
    source_id = Column(String(64), nullable=True)
    category = Column(Enum(ItemCategory), nullable=False, default=ItemCategory.OTHER)
    item_description = Column(String(500), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=Decimal("0.00"))
    total_price = Column(Numeric(12, 2), nullable=False)

    added_by = Column(Uuid, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    bill = relationship("Bill", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="check_item_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="check_item_unit_price_non_negative"),
        CheckConstraint(
            "discount_percentage >= 0 AND discount_percentage <= 100",
            name="check_item_discount_percentage_range"
        ),
        Index("ix_bill_items_source", "source_type", "source_id"),
    )


class Payment(Base):
    """Funds received against a bill"""
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_id = Column(Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)
    transaction_id = Column(String(40), nullable=False, unique=True)

    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(Enum(PaymentMethod), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_date = Column(DateTime, default=utcnow, nullable=False)

    reference_number = Column(String(100), nullable=True)
    card_last_four = Column(String(4), nullable=True)
    card_type = Column(String(30), nullable=True)
    bank_name = Column(String(100), nullable=True)
    check_number = Column(String(50), nullable=True)
    amount_tendered = Column(Numeric(12, 2), nullable=True)
    change_due = Column(Numeric(12, 2), nullable=True)
    insurance_claim_id = Column(Uuid, ForeignKey("insurance_claims.id"), nullable=True)

    received_by = Column(Uuid, nullable=True)
    notes = Column(Text, nullable=True)

    voided_at = Column(DateTime, nullable=True)
    voided_by = Column(Uuid, nullable=True)
    void_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    bill = relationship("Bill", back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount > 0", name="check_payment_amount_positive"),
    )


class BillRefund(Base):
    """Partial or full reversal of a payment"""
    __tablename__ = "bill_refunds"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_id = Column(Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)
    payment_id = Column(Uuid, ForeignKey("payments.id"), nullable=False, index=True)
    reference_number = Column(String(32), nullable=False, unique=True)

    refund_amount = Column(Numeric(12, 2), nullable=False)
    refund_type = Column(Enum(RefundType), nullable=False)
    refund_reason = Column(Text, nullable=False)
    refund_method = Column(Enum(PaymentMethod), nullable=False)
    refund_date = Column(DateTime, default=utcnow, nullable=False)
    status = Column(Enum(RefundStatus), nullable=False, default=RefundStatus.PENDING)

    requested_by = Column(Uuid, nullable=True)
    processed_by = Column(Uuid, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("refund_amount > 0", name="check_refund_amount_positive"),
    )


class BillStatusHistory(Base):
    """Append-only trail of payment status changes on a bill"""
    __tablename__ = "bill_status_history"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    bill_id = Column(Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False, index=True)
    field_name = Column(String(50), nullable=False, default="payment_status")
    status_from = Column(String(30), nullable=True)
    status_to = Column(String(30), nullable=False)
    changed_by = Column(Uuid, nullable=True)
    reason = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class BillingSetting(Base):
    """Key/value billing configuration editable at runtime"""
    __tablename__ = "billing_settings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    key = Column(String(100), nullable=False, unique=True, index=True)
    value = Column(Text, nullable=True)
    data_type = Column(Enum(SettingDataType), nullable=False, default=SettingDataType.STRING)
    group = Column(String(50), nullable=False, default="general")
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
