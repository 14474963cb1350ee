from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from hms_billing.domain.insurance.models import ClaimStatus


class InsuranceProviderCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    code: str = Field(..., min_length=1, max_length=50)
    contact_number: Optional[str] = None
    email: Optional[str] = None
    max_coverage_amount: Optional[Decimal] = None
    is_active: bool = True


class PatientInsuranceCreate(BaseModel):
    patient_id: UUID
    provider_id: UUID
    policy_number: str = Field(..., min_length=1, max_length=100)
    policy_holder_name: Optional[str] = None
    relationship_to_patient: str = "self"
    coverage_start_date: date
    coverage_end_date: Optional[date] = None
    co_pay_amount: Decimal = Field(Decimal("0"), ge=0)
    co_pay_percentage: Decimal = Field(Decimal("0"), ge=0, le=100)
    deductible_amount: Decimal = Field(Decimal("0"), ge=0)
    deductible_met: Decimal = Field(Decimal("0"), ge=0)
    annual_max_coverage: Optional[Decimal] = Field(None, ge=0)
    annual_used_amount: Decimal = Field(Decimal("0"), ge=0)
    is_primary: bool = True
    is_active: bool = True


class ClaimCreate(BaseModel):
    bill_id: UUID
    patient_insurance_id: UUID
    claim_amount: Optional[Decimal] = None  # None: the policy's coverage of the bill total
    notes: Optional[str] = None


class ClaimDecision(BaseModel):
    """Insurer's answer to a submitted claim"""
    status: Literal["approved", "partially_approved", "rejected"]
    approved_amount: Optional[Decimal] = Field(None, ge=0)
    deductible_amount: Optional[Decimal] = Field(None, ge=0)
    co_pay_amount: Optional[Decimal] = Field(None, ge=0)
    rejection_reason: Optional[str] = None
    rejection_codes: List[str] = Field(default_factory=list)
    response_date: Optional[datetime] = None
    notes: Optional[str] = None


class ClaimAppeal(BaseModel):
    reason: str = Field(..., min_length=1)
    documents: List[Dict[str, Any]] = Field(default_factory=list)


class InsuranceClaimResponse(BaseModel):
    id: UUID
    claim_number: str
    bill_id: UUID
    patient_insurance_id: UUID
    claim_amount: Decimal
    approved_amount: Optional[Decimal] = None
    deductible_amount: Optional[Decimal] = None
    co_pay_amount: Optional[Decimal] = None
    status: ClaimStatus
    submission_date: Optional[datetime] = None
    response_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejection_codes: Optional[List[str]] = None
    appeal_count: int = 0
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ClaimValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class ClaimStatistics(BaseModel):
    total_claims: int
    total_claimed: Decimal
    total_approved: Decimal
    by_status: Dict[str, int]
