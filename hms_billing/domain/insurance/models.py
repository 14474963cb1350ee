"""
Insurance Domain Models

Implements the database models for:
- Insurance providers
- Patient insurance policies (deductible, co-pay, annual maximum)
- Insurance claims against bills
"""

from decimal import Decimal

from sqlalchemy import (
    Column, String, Date, Boolean, DateTime, ForeignKey,
    Integer, Numeric, Text, Enum, JSON, CheckConstraint, Uuid
)
from sqlalchemy.orm import relationship
from hms_billing.infrastructure.database import Base
from hms_billing.core.utils import utcnow
import uuid
import enum


class ClaimStatus(str, enum.Enum):
    """Insurance claim lifecycle"""
    DRAFT = "draft"
    SUBMITTED = "submitted"
    PENDING = "pending"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"
    APPEALED = "appealed"
    CLOSED = "closed"


class InsuranceProvider(Base):
    __tablename__ = "insurance_providers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False, unique=True)
    contact_number = Column(String(50), nullable=True)
    email = Column(String(255), nullable=True)
    max_coverage_amount = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class PatientInsurance(Base):
    """Insurance policy held by a patient"""
    __tablename__ = "patient_insurances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id = Column(Uuid, nullable=False, index=True)
    provider_id = Column(Uuid, ForeignKey("insurance_providers.id"), nullable=False)

    policy_number = Column(String(100), nullable=False, unique=True)
    policy_holder_name = Column(String(255), nullable=True)
    relationship_to_patient = Column(String(50), nullable=False, default="self")

    coverage_start_date = Column(Date, nullable=False)
    coverage_end_date = Column(Date, nullable=True)

    co_pay_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    co_pay_percentage = Column(Numeric(5, 2), nullable=False, default=Decimal("0.00"))
    deductible_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    deductible_met = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    annual_max_coverage = Column(Numeric(12, 2), nullable=True)  # None: unlimited
    annual_used_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))

    is_primary = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    provider = relationship("InsuranceProvider", lazy="joined")

    __table_args__ = (
        CheckConstraint(
            "co_pay_percentage >= 0 AND co_pay_percentage <= 100",
            name="check_co_pay_percentage_range"
        ),
        CheckConstraint("deductible_met >= 0", name="check_deductible_met_non_negative"),
    )

    @property
    def deductible_remaining(self) -> Decimal:
        return max(Decimal("0.00"), (self.deductible_amount or 0) - (self.deductible_met or 0))


class InsuranceClaim(Base):
    """Claim for reimbursement of one bill under one policy"""
    __tablename__ = "insurance_claims"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    claim_number = Column(String(32), nullable=False, unique=True, index=True)
    bill_id = Column(Uuid, ForeignKey("bills.id"), nullable=False, index=True)
    patient_insurance_id = Column(Uuid, ForeignKey("patient_insurances.id"), nullable=False)

    claim_amount = Column(Numeric(12, 2), nullable=False)
    approved_amount = Column(Numeric(12, 2), nullable=True)
    deductible_amount = Column(Numeric(12, 2), nullable=True)
    co_pay_amount = Column(Numeric(12, 2), nullable=True)

    status = Column(Enum(ClaimStatus), nullable=False, default=ClaimStatus.DRAFT, index=True)
    submission_date = Column(DateTime, nullable=True)
    response_date = Column(DateTime, nullable=True)
    approval_date = Column(DateTime, nullable=True)

    rejection_reason = Column(Text, nullable=True)
    rejection_codes = Column(JSON, nullable=True)
    documents = Column(JSON, nullable=True)
    appeal_count = Column(Integer, nullable=False, default=0)

    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    submitted_by = Column(Uuid, nullable=True)
    processed_by = Column(Uuid, nullable=True)
    created_by = Column(Uuid, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    patient_insurance = relationship("PatientInsurance", lazy="joined")

    __table_args__ = (
        CheckConstraint("claim_amount > 0", name="check_claim_amount_positive"),
    )
