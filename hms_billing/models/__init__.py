from hms_billing.domain.audit.models import AuditLog
from hms_billing.domain.insurance.models import InsuranceProvider, PatientInsurance, InsuranceClaim
from hms_billing.domain.billing.models import (
    Bill, BillItem, Payment, BillRefund, BillStatusHistory, BillingSetting
)
