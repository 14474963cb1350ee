# Insurance domain module
from hms_billing.domain.insurance.models import (
    ClaimStatus,
    InsuranceClaim,
    InsuranceProvider,
    PatientInsurance,
)

__all__ = [
    "ClaimStatus",
    "InsuranceClaim",
    "InsuranceProvider",
    "PatientInsurance",
]
