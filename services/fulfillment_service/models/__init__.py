"""Fulfillment service models package."""

from services.fulfillment_service.models.core import (
    HandoffMixin,
    MarketBoxOffering,
    MarketBoxPickup,
    MarketBoxSubscription,
    Notification,
    Order,
    OrderItem,
    VendorFeeLedgerEntry,
    VendorPayout,
    VendorProfile,
)
from services.fulfillment_service.models.enums import (
    INACTIVE_PAYOUT_STATUSES,
    FeeEntryType,
    HandoffRole,
    IssueStatus,
    NotificationType,
    OrderItemStatus,
    OrderStatus,
    PaymentMethod,
    PayoutStatus,
    PickupStatus,
    SubscriptionStatus,
    enum_values,
)

__all__ = [
    "enum_values",
    "INACTIVE_PAYOUT_STATUSES",
    # Enums
    "FeeEntryType",
    "HandoffRole",
    "IssueStatus",
    "NotificationType",
    "OrderItemStatus",
    "OrderStatus",
    "PaymentMethod",
    "PayoutStatus",
    "PickupStatus",
    "SubscriptionStatus",
    # Models
    "HandoffMixin",
    "MarketBoxOffering",
    "MarketBoxPickup",
    "MarketBoxSubscription",
    "Notification",
    "Order",
    "OrderItem",
    "VendorFeeLedgerEntry",
    "VendorPayout",
    "VendorProfile",
]
