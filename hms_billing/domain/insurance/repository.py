from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.domain.insurance.models import (
    InsuranceProvider, PatientInsurance, InsuranceClaim, ClaimStatus
)

# Claims in these states block a new submission for the same bill
OPEN_CLAIM_STATUSES = (
    ClaimStatus.SUBMITTED,
    ClaimStatus.PENDING,
    ClaimStatus.APPROVED,
    ClaimStatus.PARTIALLY_APPROVED,
    ClaimStatus.APPEALED,
)

# Claims with the insurer and still waiting on its decision
AWAITING_DECISION_STATUSES = (
    ClaimStatus.SUBMITTED,
    ClaimStatus.PENDING,
    ClaimStatus.APPEALED,
)


class InsuranceProviderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, provider_data: dict) -> InsuranceProvider:
        provider = InsuranceProvider(**provider_data)
        self.db.add(provider)
        await self.db.flush()
        return provider

    async def get_by_id(self, provider_id: uuid.UUID) -> Optional[InsuranceProvider]:
        result = await self.db.execute(
            select(InsuranceProvider).where(InsuranceProvider.id == provider_id)
        )
        return result.scalar_one_or_none()


class PatientInsuranceRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, insurance_data: dict) -> PatientInsurance:
        insurance = PatientInsurance(**insurance_data)
        self.db.add(insurance)
        await self.db.flush()
        return insurance

    async def get_by_id(self, insurance_id: uuid.UUID, for_update: bool = False) -> Optional[PatientInsurance]:
        query = (
            select(PatientInsurance)
            .where(PatientInsurance.id == insurance_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update(of=PatientInsurance)
        result = await self.db.execute(query)
        return result.unique().scalar_one_or_none()

    async def update(self, insurance: PatientInsurance, update_data: Dict[str, Any]) -> PatientInsurance:
        for field, value in update_data.items():
            setattr(insurance, field, value)
        await self.db.flush()
        return insurance


class InsuranceClaimRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, claim_data: dict) -> InsuranceClaim:
        claim = InsuranceClaim(**claim_data)
        self.db.add(claim)
        await self.db.flush()
        return claim

    async def get_by_id(self, claim_id: uuid.UUID, for_update: bool = False) -> Optional[InsuranceClaim]:
        query = (
            select(InsuranceClaim)
            .where(InsuranceClaim.id == claim_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update(of=InsuranceClaim)
        result = await self.db.execute(query)
        return result.unique().scalar_one_or_none()

    async def claim_number_exists(self, claim_number: str) -> bool:
        result = await self.db.execute(
            select(func.count(InsuranceClaim.id)).where(InsuranceClaim.claim_number == claim_number)
        )
        return result.scalar_one() > 0

    async def get_open_for_bill(
        self,
        bill_id: uuid.UUID,
        exclude_claim_id: Optional[uuid.UUID] = None,
        statuses: tuple = OPEN_CLAIM_STATUSES
    ) -> List[InsuranceClaim]:
        query = select(InsuranceClaim).where(
            and_(InsuranceClaim.bill_id == bill_id, InsuranceClaim.status.in_(statuses))
        )
        if exclude_claim_id is not None:
            query = query.where(InsuranceClaim.id != exclude_claim_id)
        result = await self.db.execute(query)
        return list(result.unique().scalars().all())

    async def get_by_bill(self, bill_id: uuid.UUID) -> List[InsuranceClaim]:
        result = await self.db.execute(
            select(InsuranceClaim)
            .where(InsuranceClaim.bill_id == bill_id)
            .order_by(InsuranceClaim.created_at)
        )
        return list(result.unique().scalars().all())

    async def status_totals(self, patient_insurance_id: Optional[uuid.UUID] = None) -> List[tuple]:
        """(status, count, claimed, approved) rows, optionally for one policy"""
        query = select(
            InsuranceClaim.status,
            func.count(InsuranceClaim.id),
            func.coalesce(func.sum(InsuranceClaim.claim_amount), 0),
            func.coalesce(func.sum(InsuranceClaim.approved_amount), 0),
        ).group_by(InsuranceClaim.status)
        if patient_insurance_id is not None:
            query = query.where(InsuranceClaim.patient_insurance_id == patient_insurance_id)
        result = await self.db.execute(query)
        return [tuple(row) for row in result.all()]

    async def update(self, claim: InsuranceClaim, update_data: Dict[str, Any]) -> InsuranceClaim:
        for field, value in update_data.items():
            setattr(claim, field, value)
        await self.db.flush()
        return claim
