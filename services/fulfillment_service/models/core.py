"""Fulfillment models: vendors, orders, market boxes, payouts, fee ledger."""

import uuid
from datetime import date, datetime
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base
from services.fulfillment_service.models.enums import (
    FeeEntryType,
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
from sqlalchemy import JSON, Boolean, CheckConstraint, Date, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

# ============================================================================
# VENDORS
# ============================================================================


class VendorProfile(Base):
    """A seller within one vertical, optionally connected to Stripe."""

    __tablename__ = "vendor_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    vertical_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)

    stripe_account_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    # Cached; refreshed from Stripe before a payout is refused
    stripe_payouts_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    stripe_status_checked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<VendorProfile {self.business_name}>"


# ============================================================================
# HANDOFF RECORDS
# ============================================================================


class HandoffMixin:
    """Mutual confirmation columns shared by order items and pickups."""

    buyer_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    vendor_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Set by whichever party confirms first, cleared on completion
    confirmation_window_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    ready_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    missed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rescheduled_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)


class Order(Base):
    """Buyer order spanning one or more vendors' items."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    buyer_user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    vertical_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(
            OrderStatus,
            values_callable=enum_values,
            name="fulfillment_order_status_enum",
        ),
        default=OrderStatus.PENDING,
    )

    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cents: Mapped[int] = mapped_column(Integer, default=0)
    tip_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Part of the tip attributable to the buyer platform fee, kept by the platform
    tip_on_platform_fee_cents: Mapped[int] = mapped_column(Integer, default=0)

    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(
            PaymentMethod,
            values_callable=enum_values,
            name="fulfillment_payment_method_enum",
        ),
        default=PaymentMethod.STRIPE,
    )
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    # Vendor attests an off-platform payment arrived
    external_payment_confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    external_payment_confirmed_by: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    items = relationship("OrderItem", back_populates="order")

    def __repr__(self):
        return f"<Order {self.order_number} status={self.status}>"


class OrderItem(HandoffMixin, Base):
    """One vendor's line on an order; the unit of handoff and payout."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    vendor_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vendor_profiles.id"), nullable=False, index=True
    )

    listing_title: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price_cents: Mapped[int] = mapped_column(Integer, default=0)
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0)
    # Vendor share after the vendor-side fee, computed at checkout
    vendor_payout_cents: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[OrderItemStatus] = mapped_column(
        SAEnum(
            OrderItemStatus,
            values_callable=enum_values,
            name="fulfillment_order_item_status_enum",
        ),
        default=OrderItemStatus.SCHEDULED,
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stripe_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Buyer says the handoff did not happen
    issue_reported_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    issue_reported_by: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    issue_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    issue_status: Mapped[Optional[IssueStatus]] = mapped_column(
        SAEnum(
            IssueStatus,
            values_callable=enum_values,
            name="fulfillment_issue_status_enum",
        ),
        nullable=True,
    )
    issue_resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    issue_resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    issue_admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem {self.id} status={self.status}>"


# ============================================================================
# MARKET BOXES
# ============================================================================


class MarketBoxOffering(Base):
    """Recurring weekly box sold by a vendor for a fixed term."""

    __tablename__ = "market_box_offerings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vendor_profiles.id"), nullable=False, index=True
    )
    vertical_id: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    term_weeks: Mapped[int] = mapped_column(Integer, default=4)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )


class MarketBoxSubscription(Base):
    """A buyer's purchase of a market box term."""

    __tablename__ = "market_box_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    offering_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("market_box_offerings.id"), nullable=False, index=True
    )
    buyer_user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)

    status: Mapped[SubscriptionStatus] = mapped_column(
        SAEnum(
            SubscriptionStatus,
            values_callable=enum_values,
            name="fulfillment_subscription_status_enum",
        ),
        default=SubscriptionStatus.ACTIVE,
    )
    total_paid_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    term_weeks: Mapped[int] = mapped_column(Integer, default=4)
    weeks_completed: Mapped[int] = mapped_column(Integer, default=0)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    offering = relationship("MarketBoxOffering")


class MarketBoxPickup(HandoffMixin, Base):
    """One scheduled week of a market box subscription."""

    __tablename__ = "market_box_pickups"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("market_box_subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PickupStatus] = mapped_column(
        SAEnum(
            PickupStatus,
            values_callable=enum_values,
            name="fulfillment_pickup_status_enum",
        ),
        default=PickupStatus.SCHEDULED,
    )
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    vendor_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "week_number", name="uq_market_box_pickup_week"
        ),
    )

    subscription = relationship("MarketBoxSubscription")


# ============================================================================
# PAYOUTS & FEES
# ============================================================================


_ACTIVE_PAYOUT = text("status NOT IN ('failed', 'cancelled')")


class VendorPayout(Base):
    """One payout attempt for an order item or a market box pickup.

    Failed attempts stay in place; a retry inserts a new row. At most one
    row that is neither failed nor cancelled may exist per order item and
    per pickup.
    """

    __tablename__ = "vendor_payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("order_items.id"), nullable=True
    )
    pickup_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("market_box_pickups.id"), nullable=True
    )
    vendor_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vendor_profiles.id"), nullable=False, index=True
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=True
    )
    retry_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("vendor_payouts.id"), nullable=True
    )

    # amount_cents = base_amount_cents - fee_deduction_cents + tip_share_cents
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    base_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    fee_deduction_cents: Mapped[int] = mapped_column(Integer, default=0)
    tip_share_cents: Mapped[int] = mapped_column(Integer, default=0)

    stripe_transfer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    status: Mapped[PayoutStatus] = mapped_column(
        SAEnum(
            PayoutStatus,
            values_callable=enum_values,
            name="fulfillment_payout_status_enum",
        ),
        default=PayoutStatus.PROCESSING,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Creation time of the first attempt in this retry chain
    first_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    # Set once the deduction has been written to the fee ledger
    fee_credited_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "(order_item_id IS NULL) <> (pickup_id IS NULL)",
            name="vendor_payout_one_target",
        ),
        Index(
            "uq_vendor_payouts_active_order_item",
            "order_item_id",
            unique=True,
            postgresql_where=_ACTIVE_PAYOUT,
            sqlite_where=_ACTIVE_PAYOUT,
        ),
        Index(
            "uq_vendor_payouts_active_pickup",
            "pickup_id",
            unique=True,
            postgresql_where=_ACTIVE_PAYOUT,
            sqlite_where=_ACTIVE_PAYOUT,
        ),
        Index("ix_vendor_payouts_status_first_attempt", "status", "first_attempt_at"),
    )

    def __repr__(self):
        return f"<VendorPayout {self.id} {self.amount_cents}c status={self.status}>"


class VendorFeeLedgerEntry(Base):
    """Platform fees owed by a vendor (debit) or settled (credit)."""

    __tablename__ = "vendor_fee_ledger"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    vendor_profile_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("vendor_profiles.id"), nullable=False, index=True
    )
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("orders.id"), nullable=True
    )
    payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("vendor_payouts.id"), nullable=True
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_type: Mapped[FeeEntryType] = mapped_column(
        SAEnum(
            FeeEntryType,
            values_callable=enum_values,
            name="fulfillment_fee_entry_type_enum",
        ),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="fee_ledger_positive_amount"),
    )


# ============================================================================
# NOTIFICATIONS
# ============================================================================


class Notification(Base):
    """In-app notification for a buyer or vendor."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    notification_type: Mapped[NotificationType] = mapped_column(
        SAEnum(
            NotificationType,
            values_callable=enum_values,
            name="fulfillment_notification_type_enum",
        ),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
