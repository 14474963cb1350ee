"""Typed access to runtime billing settings, falling back to application config."""

from decimal import Decimal
from typing import Any, Dict, List
from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.config import settings
from hms_billing.core.utils import to_decimal
from hms_billing.domain.billing.models import SettingDataType
from hms_billing.domain.billing.repository import BillingSettingRepository


# key -> (data type, group)
DEFAULT_SETTINGS = {
    "default_tax_rate": (SettingDataType.DECIMAL, "tax"),
    "enable_discounts": (SettingDataType.BOOLEAN, "discounts"),
    "enable_partial_payments": (SettingDataType.BOOLEAN, "payments"),
    "minimum_payment_amount": (SettingDataType.DECIMAL, "payments"),
    "accepted_payment_methods": (SettingDataType.JSON, "payments"),
    "payment_due_days": (SettingDataType.INTEGER, "payments"),
    "hospital_name": (SettingDataType.STRING, "invoice"),
    "hospital_address": (SettingDataType.STRING, "invoice"),
    "hospital_phone": (SettingDataType.STRING, "invoice"),
    "hospital_email": (SettingDataType.STRING, "invoice"),
}


class BillingSettingsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = BillingSettingRepository(db)

    async def tax_rate(self) -> Decimal:
        value = await self.repo.get_value("default_tax_rate", settings.DEFAULT_TAX_RATE)
        return to_decimal(value)

    async def discounts_enabled(self) -> bool:
        return bool(await self.repo.get_value("enable_discounts", settings.ENABLE_DISCOUNTS))

    async def partial_payments_enabled(self) -> bool:
        return bool(await self.repo.get_value("enable_partial_payments", settings.ENABLE_PARTIAL_PAYMENTS))

    async def minimum_payment_amount(self) -> Decimal:
        value = await self.repo.get_value("minimum_payment_amount", settings.MINIMUM_PAYMENT_AMOUNT)
        return to_decimal(value)

    async def accepted_payment_methods(self) -> List[str]:
        value = await self.repo.get_value("accepted_payment_methods", settings.ACCEPTED_PAYMENT_METHODS)
        if isinstance(value, str):
            value = [m.strip() for m in value.split(",") if m.strip()]
        return list(value or [])

    async def payment_due_days(self) -> int:
        return int(await self.repo.get_value("payment_due_days", settings.PAYMENT_DUE_DAYS))

    async def hospital_info(self) -> Dict[str, Any]:
        stored = await self.repo.get_all()
        return {
            "name": stored.get("hospital_name") or settings.PROJECT_NAME,
            "address": stored.get("hospital_address") or "",
            "phone": stored.get("hospital_phone") or "",
            "email": stored.get("hospital_email") or "",
        }

    async def set(self, key: str, value: Any):
        """Store a known setting with its declared type"""
        data_type, group = DEFAULT_SETTINGS.get(key, (SettingDataType.STRING, "general"))
        return await self.repo.set(key, value, data_type=data_type, group=group)
