"""Vendor confirmation of orders the buyer paid outside the platform.

Confirming marks the order paid and debits each vendor on the order with
the platform fee for their items. Those debits are the balance that later
payouts are auto-deducted against.
"""

import uuid
from dataclasses import dataclass

from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.fees import record_external_payment_fee
from services.fulfillment_service.models import (
    Order,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    PaymentMethod,
    VendorProfile,
)
from sqlalchemy import select, update

logger = get_logger(__name__)

_CONFIRMABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PAID)


@dataclass
class ExternalPaymentOutcome:
    order: Order
    fees_recorded_cents: int


async def vendor_confirm_external_payment(
    ctx: FulfillmentContext, user: AuthUser, order_id: uuid.UUID
) -> ExternalPaymentOutcome:
    """Vendor says the buyer's off-platform payment arrived."""
    order = await ctx.db.get(Order, order_id)
    if order is None:
        raise errors.order_not_found("Order not found")

    if order.payment_method == PaymentMethod.STRIPE:
        raise errors.not_confirmable(
            "This order was paid via Stripe, not external payment"
        )
    if order.external_payment_confirmed_at is not None:
        raise errors.not_confirmable("Payment already confirmed for this order")
    if order.status not in _CONFIRMABLE_ORDER_STATUSES:
        raise errors.not_confirmable(
            f"Order is {order.status.value} and cannot be confirmed",
            order_status=order.status.value,
        )

    result = await ctx.db.execute(
        select(OrderItem, VendorProfile)
        .join(VendorProfile, VendorProfile.id == OrderItem.vendor_profile_id)
        .where(OrderItem.order_id == order.id)
    )
    rows = result.all()
    if not any(vendor.user_id == user.user_id for _, vendor in rows):
        raise errors.forbidden("Not authorized to confirm payment for this order")

    now = ctx.now()
    result = await ctx.db.execute(
        update(Order)
        .where(Order.id == order.id, Order.external_payment_confirmed_at.is_(None))
        .values(
            status=OrderStatus.PAID,
            external_payment_confirmed_at=now,
            external_payment_confirmed_by=user.user_id,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await ctx.db.rollback()
        raise errors.not_confirmable("Payment already confirmed for this order")

    fees_recorded = 0
    for item, _ in rows:
        if item.status == OrderItemStatus.CANCELLED:
            continue
        entry = await record_external_payment_fee(
            ctx.db, item.vendor_profile_id, order.id, item.subtotal_cents, ctx.fees
        )
        if entry is not None:
            fees_recorded += entry.amount_cents

    await ctx.db.commit()
    await ctx.db.refresh(order)
    logger.info(
        "External payment for order %s confirmed by %s; %dc in fees recorded",
        order.id,
        user.user_id,
        fees_recorded,
    )
    return ExternalPaymentOutcome(order=order, fees_recorded_cents=fees_recorded)
