# Billing domain module
from hms_billing.domain.billing.models import (
    Bill,
    BillItem,
    BillPaymentStatus,
    BillRefund,
    BillStatusHistory,
    BillingSetting,
    DiscountType,
    ItemCategory,
    ItemType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    RefundType,
    SettingDataType,
)

__all__ = [
    "Bill",
    "BillItem",
    "BillPaymentStatus",
    "BillRefund",
    "BillStatusHistory",
    "BillingSetting",
    "DiscountType",
    "ItemCategory",
    "ItemType",
    "Payment",
    "PaymentMethod",
    "PaymentStatus",
    "RefundStatus",
    "RefundType",
    "SettingDataType",
]
