"""Roll item-level confirmations up to their order or subscription."""

import uuid
from datetime import datetime

from libs.common.logging import get_logger
from services.fulfillment_service.models import (
    MarketBoxPickup,
    MarketBoxSubscription,
    NotificationType,
    Order,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    PickupStatus,
    SubscriptionStatus,
)
from services.fulfillment_service.services.notifications import notify
from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


async def complete_order_if_ready(
    db: AsyncSession, order_id: uuid.UUID, now: datetime
) -> bool:
    """Mark a paid order completed once every live item is confirmed by both sides.

    One conditional UPDATE decides it, so when several item confirmations
    finish together exactly one caller gets True. That caller notifies the
    buyer. Commits.
    """
    live_items = (
        OrderItem.order_id == order_id,
        OrderItem.status != OrderItemStatus.CANCELLED,
    )
    has_live_item = exists().where(*live_items)
    has_unconfirmed_item = exists().where(
        *live_items,
        or_(
            OrderItem.buyer_confirmed_at.is_(None),
            OrderItem.vendor_confirmed_at.is_(None),
        ),
    )

    result = await db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == OrderStatus.PAID,
            has_live_item,
            ~has_unconfirmed_item,
        )
        .values(status=OrderStatus.COMPLETED, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.commit()
        return False

    order = (
        await db.execute(
            select(Order.buyer_user_id, Order.order_number).where(Order.id == order_id)
        )
    ).one()
    notify(
        db,
        order.buyer_user_id,
        NotificationType.ORDER_COMPLETED,
        order_number=order.order_number,
        order_id=order_id,
    )
    await db.commit()
    logger.info("Order %s completed", order_id)
    return True


async def complete_subscription_if_ready(
    db: AsyncSession, subscription_id: uuid.UUID, now: datetime
) -> bool:
    """Refresh weeks_completed and close the subscription after its last pickup.

    Returns True only for the call that moved it to completed. Commits.
    """
    picked_up = (
        select(func.count(MarketBoxPickup.id))
        .where(
            MarketBoxPickup.subscription_id == subscription_id,
            MarketBoxPickup.status == PickupStatus.PICKED_UP,
        )
        .scalar_subquery()
    )
    await db.execute(
        update(MarketBoxSubscription)
        .where(MarketBoxSubscription.id == subscription_id)
        .values(weeks_completed=picked_up)
        .execution_options(synchronize_session=False)
    )

    result = await db.execute(
        update(MarketBoxSubscription)
        .where(
            MarketBoxSubscription.id == subscription_id,
            MarketBoxSubscription.status == SubscriptionStatus.ACTIVE,
            MarketBoxSubscription.weeks_completed >= MarketBoxSubscription.term_weeks,
        )
        .values(status=SubscriptionStatus.COMPLETED, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    completed = result.rowcount == 1
    if completed:
        logger.info("Market box subscription %s completed", subscription_id)
    return completed
