"""Enum definitions for fulfillment service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    VENMO = "venmo"
    CASHAPP = "cashapp"
    PAYPAL = "paypal"
    CASH = "cash"


class OrderItemStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    READY = "ready"
    FULFILLED = "fulfilled"
    MISSED = "missed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class IssueStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class PickupStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    READY = "ready"
    PICKED_UP = "picked_up"
    MISSED = "missed"
    RESCHEDULED = "rescheduled"
    SKIPPED = "skipped"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PayoutStatus(str, enum.Enum):
    PROCESSING = "processing"
    FAILED = "failed"
    SKIPPED_DEV = "skipped_dev"
    # Whole payout withheld against the vendor's fee balance, nothing transferred
    FEE_OFFSET = "fee_offset"
    # Nothing was owed (zero base, no tip, no deduction)
    SKIPPED_ZERO = "skipped_zero"
    # Gave up retrying; needs manual resolution
    CANCELLED = "cancelled"


# Statuses that do not hold the one-payout-per-target slot
INACTIVE_PAYOUT_STATUSES = (PayoutStatus.FAILED, PayoutStatus.CANCELLED)


class FeeEntryType(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class HandoffRole(str, enum.Enum):
    BUYER = "buyer"
    VENDOR = "vendor"


class NotificationType(str, enum.Enum):
    PICKUP_CONFIRMATION_NEEDED = "pickup_confirmation_needed"
    ORDER_READY = "order_ready"
    ORDER_FULFILLED = "order_fulfilled"
    ORDER_COMPLETED = "order_completed"
    PICKUP_MISSED = "pickup_missed"
    PAYOUT_PROCESSED = "payout_processed"
    PAYOUT_FAILED = "payout_failed"
    MARKET_BOX_PICKUP_READY = "market_box_pickup_ready"
    MARKET_BOX_PICKUP_CONFIRMED = "market_box_pickup_confirmed"
    MARKET_BOX_PICKUP_MISSED = "market_box_pickup_missed"
    PICKUP_ISSUE_REPORTED = "pickup_issue_reported"
    ISSUE_RESOLVED = "issue_resolved"
