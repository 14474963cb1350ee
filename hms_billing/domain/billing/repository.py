"""
Billing Repository Layer

Data access for bills, bill items, payments, refunds, status history and
billing settings. Repositories flush but never commit: the calling service
owns the unit of work.
"""

from typing import Any, Dict, List, Optional
from datetime import date
from decimal import Decimal, InvalidOperation
import json
import uuid

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from hms_billing.core.utils import to_money
from hms_billing.domain.billing.models import (
    Bill, BillItem, Payment, PaymentStatus, BillRefund, RefundStatus,
    BillStatusHistory, BillingSetting, SettingDataType
)

# Payments whose amount still counts towards a bill, net of their refunds
COUNTED_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)


class BillRepository:
    """Repository for bill operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, bill_data: dict) -> Bill:
        bill = Bill(**bill_data)
        self.db.add(bill)
        await self.db.flush()
        return bill

    async def get_by_id(self, bill_id: uuid.UUID, for_update: bool = False) -> Optional[Bill]:
        """Load a bill, refreshing any stale copy held by the session"""
        query = select(Bill).where(Bill.id == bill_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update(of=Bill)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def bill_number_exists(self, bill_number: str) -> bool:
        result = await self.db.execute(
            select(func.count(Bill.id)).where(Bill.bill_number == bill_number)
        )
        return result.scalar_one() > 0

    async def invoice_number_exists(self, invoice_number: str) -> bool:
        result = await self.db.execute(
            select(func.count(Bill.id)).where(Bill.invoice_number == invoice_number)
        )
        return result.scalar_one() > 0

    async def count_invoiced_on(self, day: date) -> int:
        """Number of bills already carrying an invoice number issued on ``day``"""
        prefix = f"INV-{day.strftime('%Y%m%d')}-"
        result = await self.db.execute(
            select(func.count(Bill.id)).where(Bill.invoice_number.like(f"{prefix}%"))
        )
        return result.scalar_one()

    async def update(self, bill: Bill, update_data: Dict[str, Any]) -> Bill:
        for field, value in update_data.items():
            setattr(bill, field, value)
        await self.db.flush()
        return bill


class BillItemRepository:
    """Repository for bill item operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, item_data: dict) -> BillItem:
        item = BillItem(**item_data)
        self.db.add(item)
        await self.db.flush()
        return item

    async def get_by_id(self, item_id: uuid.UUID) -> Optional[BillItem]:
        result = await self.db.execute(
            select(BillItem).where(BillItem.id == item_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_bill(self, bill_id: uuid.UUID) -> List[BillItem]:
        result = await self.db.execute(
            select(BillItem)
            .where(BillItem.bill_id == bill_id)
            .order_by(BillItem.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def source_already_billed(self, bill_id: uuid.UUID, source_type: str, source_id) -> bool:
        """True if the bill already carries an item for the given source"""
        query = select(func.count(BillItem.id)).where(
            and_(
                BillItem.bill_id == bill_id,
                BillItem.source_type == source_type,
                BillItem.source_id == str(source_id),
            )
        )
        result = await self.db.execute(query)
        return result.scalar_one() > 0

    async def update(self, item: BillItem, update_data: Dict[str, Any]) -> BillItem:
        for field, value in update_data.items():
            setattr(item, field, value)
        await self.db.flush()
        return item

    async def delete(self, item: BillItem) -> None:
        await self.db.delete(item)
        await self.db.flush()


class PaymentRepository:
    """Repository for payment operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, payment_data: dict) -> Payment:
        payment = Payment(**payment_data)
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def get_by_id(self, payment_id: uuid.UUID, for_update: bool = False) -> Optional[Payment]:
        query = select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update(of=Payment)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def transaction_id_exists(self, transaction_id: str) -> bool:
        result = await self.db.execute(
            select(func.count(Payment.id)).where(Payment.transaction_id == transaction_id)
        )
        return result.scalar_one() > 0

    async def get_by_bill(self, bill_id: uuid.UUID, status: Optional[PaymentStatus] = None) -> List[Payment]:
        query = select(Payment).where(Payment.bill_id == bill_id)
        if status is not None:
            query = query.where(Payment.status == status)
        result = await self.db.execute(
            query.order_by(Payment.payment_date).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def sum_counted_payments(self, bill_id: uuid.UUID) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                and_(Payment.bill_id == bill_id, Payment.status.in_(COUNTED_PAYMENT_STATUSES))
            )
        )
        return to_money(result.scalar_one())

    async def sum_refunds_against_counted_payments(self, bill_id: uuid.UUID) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(BillRefund.refund_amount), 0))
            .select_from(BillRefund)
            .join(Payment, Payment.id == BillRefund.payment_id)
            .where(
                and_(
                    BillRefund.bill_id == bill_id,
                    BillRefund.status == RefundStatus.COMPLETED,
                    Payment.status.in_(COUNTED_PAYMENT_STATUSES),
                )
            )
        )
        return to_money(result.scalar_one())

    async def net_amount_paid(self, bill_id: uuid.UUID) -> Decimal:
        """Completed and refunded payments minus the completed refunds issued against them"""
        paid = await self.sum_counted_payments(bill_id)
        refunded = await self.sum_refunds_against_counted_payments(bill_id)
        return to_money(paid - refunded)

    async def update(self, payment: Payment, update_data: Dict[str, Any]) -> Payment:
        for field, value in update_data.items():
            setattr(payment, field, value)
        await self.db.flush()
        return payment


class RefundRepository:
    """Repository for refund operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, refund_data: dict) -> BillRefund:
        refund = BillRefund(**refund_data)
        self.db.add(refund)
        await self.db.flush()
        return refund

    async def reference_number_exists(self, reference_number: str) -> bool:
        result = await self.db.execute(
            select(func.count(BillRefund.id)).where(BillRefund.reference_number == reference_number)
        )
        return result.scalar_one() > 0

    async def sum_completed_for_payment(self, payment_id: uuid.UUID) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(BillRefund.refund_amount), 0)).where(
                and_(BillRefund.payment_id == payment_id, BillRefund.status == RefundStatus.COMPLETED)
            )
        )
        return to_money(result.scalar_one())

    async def sum_completed_for_bill(self, bill_id: uuid.UUID) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(BillRefund.refund_amount), 0)).where(
                and_(BillRefund.bill_id == bill_id, BillRefund.status == RefundStatus.COMPLETED)
            )
        )
        return to_money(result.scalar_one())

    async def get_by_bill(self, bill_id: uuid.UUID) -> List[BillRefund]:
        result = await self.db.execute(
            select(BillRefund).where(BillRefund.bill_id == bill_id).order_by(BillRefund.refund_date)
        )
        return list(result.scalars().all())


class BillStatusHistoryRepository:
    """Repository for the bill status trail"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, history_data: dict) -> BillStatusHistory:
        entry = BillStatusHistory(**history_data)
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def get_by_bill(self, bill_id: uuid.UUID) -> List[BillStatusHistory]:
        result = await self.db.execute(
            select(BillStatusHistory)
            .where(BillStatusHistory.bill_id == bill_id)
            .order_by(BillStatusHistory.created_at)
        )
        return list(result.scalars().all())


class BillingSettingRepository:
    """Repository for runtime billing settings"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, key: str) -> Optional[BillingSetting]:
        result = await self.db.execute(
            select(BillingSetting).where(
                and_(BillingSetting.key == key, BillingSetting.is_active.is_(True))
            )
        )
        return result.scalar_one_or_none()

    async def get_value(self, key: str, default: Any = None) -> Any:
        """Typed value of a setting, or ``default`` when missing or unparsable"""
        setting = await self.get(key)
        if setting is None or setting.value is None:
            return default
        return cast_setting_value(setting.value, setting.data_type, default)

    async def get_all(self) -> Dict[str, Any]:
        result = await self.db.execute(
            select(BillingSetting).where(BillingSetting.is_active.is_(True))
        )
        return {
            s.key: cast_setting_value(s.value, s.data_type, None)
            for s in result.scalars().all()
        }

    async def set(
        self,
        key: str,
        value: Any,
        data_type: SettingDataType = SettingDataType.STRING,
        group: str = "general",
        description: Optional[str] = None
    ) -> BillingSetting:
        stored = json.dumps(value) if data_type == SettingDataType.JSON else str(value)
        setting = await self.get(key)
        if setting is None:
            setting = BillingSetting(
                key=key, value=stored, data_type=data_type, group=group, description=description
            )
            self.db.add(setting)
        else:
            setting.value = stored
            setting.data_type = data_type
        await self.db.flush()
        return setting


def cast_setting_value(raw: Optional[str], data_type: SettingDataType, default: Any) -> Any:
    if raw is None:
        return default
    try:
        if data_type == SettingDataType.INTEGER:
            return int(raw)
        if data_type == SettingDataType.DECIMAL:
            return Decimal(raw)
        if data_type == SettingDataType.BOOLEAN:
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if data_type == SettingDataType.JSON:
            return json.loads(raw)
    except (ValueError, InvalidOperation, json.JSONDecodeError):
        return default
    return raw
