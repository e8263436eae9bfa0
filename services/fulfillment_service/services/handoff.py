"""Order item handoff flows: buyer confirm, vendor fulfill, vendor confirm-handoff.

Each flow authorizes the caller against the item, runs the confirmation
state machine, and on mutual confirmation pays the vendor and rolls the
order up. The two vendor flows treat a failed transfer differently:
fulfill undoes the vendor's confirmation and fails, confirm-handoff keeps
the handoff and reports the payout as pending retry.

A buyer who did not get the item reports an issue instead of confirming;
the vendor then either stands by the delivery or refunds the item.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from libs.auth.models import AuthUser
from libs.common.datetime_utils import as_utc
from libs.common.logging import get_logger
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.models import (
    HandoffRole,
    IssueStatus,
    NotificationType,
    Order,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    PaymentMethod,
    VendorProfile,
)
from services.fulfillment_service.services.completion import complete_order_if_ready
from services.fulfillment_service.services.confirmation import (
    acknowledge,
    mark_missed,
    mark_ready,
    reschedule,
    revert_vendor_confirmation,
)
from services.fulfillment_service.services.notifications import notify
from services.fulfillment_service.services.payouts import (
    PayoutOutcome,
    build_order_item_target,
    ensure_payout_eligible,
    fire_payout,
)
from services.fulfillment_service.stripe_client import PayoutGatewayError
from sqlalchemy import func, select, update

logger = get_logger(__name__)


@dataclass
class HandoffOutcome:
    item: OrderItem
    # Both parties have confirmed this item
    completed: bool
    order_completed: bool = False
    payout: Optional[PayoutOutcome] = None
    window_expires_at: Optional[datetime] = None

    @property
    def payout_failed(self) -> bool:
        return bool(self.payout and self.payout.failed)


# ---------------------------------------------------------------------------
# Loading & authorization
# ---------------------------------------------------------------------------


async def load_vendor_item(
    ctx: FulfillmentContext, user: AuthUser, item_id: uuid.UUID
) -> tuple[OrderItem, VendorProfile, Order]:
    """Fetch an order item the calling vendor sells; 404 otherwise."""
    result = await ctx.db.execute(
        select(OrderItem, VendorProfile, Order)
        .join(VendorProfile, VendorProfile.id == OrderItem.vendor_profile_id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(OrderItem.id == item_id, VendorProfile.user_id == user.user_id)
    )
    row = result.first()
    if row is None:
        raise errors.order_not_found()
    item, vendor, order = row
    _ensure_order_open(order)
    return item, vendor, order


async def load_buyer_item(
    ctx: FulfillmentContext, user: AuthUser, item_id: uuid.UUID
) -> tuple[OrderItem, VendorProfile, Order]:
    """Fetch an order item on one of the calling buyer's orders; 404 otherwise."""
    result = await ctx.db.execute(
        select(OrderItem, VendorProfile, Order)
        .join(VendorProfile, VendorProfile.id == OrderItem.vendor_profile_id)
        .join(Order, Order.id == OrderItem.order_id)
        .where(OrderItem.id == item_id, Order.buyer_user_id == user.user_id)
    )
    row = result.first()
    if row is None:
        raise errors.order_not_found()
    item, vendor, order = row
    _ensure_order_open(order)
    return item, vendor, order


def _ensure_order_open(order: Order) -> None:
    if order.status in (OrderStatus.PENDING, OrderStatus.CANCELLED):
        raise errors.not_confirmable(
            f"Order is {order.status.value} and cannot be handed off",
            order_status=order.status.value,
        )


# ---------------------------------------------------------------------------
# Flows
# ---------------------------------------------------------------------------


async def _finish(
    ctx: FulfillmentContext, item: OrderItem, payout: PayoutOutcome
) -> HandoffOutcome:
    # fire_payout may have rolled back, which expires the loaded item
    await ctx.db.refresh(item)
    order_completed = await complete_order_if_ready(ctx.db, item.order_id, ctx.now())
    await ctx.db.refresh(item)
    return HandoffOutcome(
        item=item, completed=True, order_completed=order_completed, payout=payout
    )


async def buyer_confirm(
    ctx: FulfillmentContext, user: AuthUser, item_id: uuid.UUID
) -> HandoffOutcome:
    """Buyer says they received the item."""
    item, vendor, order = await load_buyer_item(ctx, user, item_id)
    result = await acknowledge(ctx, HandoffRole.BUYER, item)

    if not result.completed:
        notify(
            ctx.db,
            vendor.user_id,
            NotificationType.PICKUP_CONFIRMATION_NEEDED,
            order_number=order.order_number,
            item_title=item.listing_title,
            order_item_id=item.id,
            window_seconds=ctx.settings.CONFIRMATION_WINDOW_SECONDS,
        )
        await ctx.db.commit()
        return HandoffOutcome(
            item=item, completed=False, window_expires_at=result.window_expires_at
        )

    target = await build_order_item_target(ctx.db, item, vendor)
    payout = await fire_payout(ctx, target)
    return await _finish(ctx, item, payout)


async def vendor_fulfill(
    ctx: FulfillmentContext, user: AuthUser, item_id: uuid.UUID
) -> HandoffOutcome:
    """Vendor hands the item over.

    Before the buyer has acted this only marks the item fulfilled and asks
    the buyer to confirm; no payout. After the buyer has confirmed it
    completes the handoff, and a failed transfer undoes the vendor side.
    """
    item, vendor, order = await load_vendor_item(ctx, user, item_id)
    await _ensure_not_locked_down(ctx, vendor, item)

    if item.buyer_confirmed_at is None:
        return await _fulfill_before_buyer(ctx, item, order)

    await ensure_payout_eligible(ctx, vendor)
    previous_status = item.status
    previous_expires_at = as_utc(item.confirmation_window_expires_at)

    result = await acknowledge(ctx, HandoffRole.VENDOR, item)
    if not result.completed:
        return HandoffOutcome(
            item=item, completed=False, window_expires_at=result.window_expires_at
        )

    target = await build_order_item_target(ctx.db, item, vendor)
    payout = await fire_payout(ctx, target)
    if payout.failed:
        await ctx.db.refresh(item)
        await revert_vendor_confirmation(
            ctx, item, previous_status, previous_expires_at
        )
        raise errors.FulfillmentError(
            502,
            errors.VENDOR_HANDOFF_FAILED,
            "Payment transfer failed. The handoff was not recorded, please try again.",
            {"reason": payout.error},
        )
    return await _finish(ctx, item, payout)


async def _ensure_not_locked_down(
    ctx: FulfillmentContext, vendor: VendorProfile, item: OrderItem
) -> None:
    """Refuse to fulfill while other buyer confirmations sit unanswered.

    Counts the vendor's other items that a buyer confirmed, that the vendor
    neither confirmed nor had reported as an issue, and whose window closed
    more than HANDOFF_LOCKDOWN_GRACE_SECONDS ago.
    """
    cutoff = ctx.now() - timedelta(
        seconds=ctx.settings.HANDOFF_LOCKDOWN_GRACE_SECONDS
    )
    result = await ctx.db.execute(
        select(func.count(OrderItem.id)).where(
            OrderItem.vendor_profile_id == vendor.id,
            OrderItem.id != item.id,
            OrderItem.buyer_confirmed_at.is_not(None),
            OrderItem.vendor_confirmed_at.is_(None),
            OrderItem.issue_reported_at.is_(None),
            OrderItem.confirmation_window_expires_at < cutoff,
        )
    )
    unresolved = int(result.scalar_one())
    if unresolved:
        logger.info(
            "Vendor %s locked out of fulfill: %d unresolved confirmations",
            vendor.id,
            unresolved,
        )
        raise errors.FulfillmentError(
            403,
            errors.HANDOFF_LOCKDOWN_ACTIVE,
            "You have unresolved pickup confirmations. Please confirm pending "
            "handoffs before fulfilling other orders.",
            {"unresolved_count": unresolved},
        )


async def _fulfill_before_buyer(
    ctx: FulfillmentContext, item: OrderItem, order: Order
) -> HandoffOutcome:
    if item.status == OrderItemStatus.FULFILLED and item.vendor_confirmed_at is None:
        # Repeat of an earlier vendor-first fulfill
        return HandoffOutcome(item=item, completed=False)
    if item.status not in (OrderItemStatus.SCHEDULED, OrderItemStatus.READY):
        raise errors.not_confirmable(
            f"Cannot fulfill an order item with status '{item.status.value}'",
            status=item.status.value,
        )

    now = ctx.now()
    result = await ctx.db.execute(
        update(OrderItem)
        .where(
            OrderItem.id == item.id,
            OrderItem.buyer_confirmed_at.is_(None),
            OrderItem.status.in_((OrderItemStatus.SCHEDULED, OrderItemStatus.READY)),
        )
        .values(
            status=OrderItemStatus.FULFILLED,
            ready_at=func.coalesce(OrderItem.ready_at, now),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await ctx.db.rollback()
        raise errors.race_lost()

    notify(
        ctx.db,
        order.buyer_user_id,
        NotificationType.ORDER_FULFILLED,
        order_number=order.order_number,
        item_title=item.listing_title,
        order_item_id=item.id,
    )
    await ctx.db.commit()
    await ctx.db.refresh(item)
    logger.info("Order item %s fulfilled by vendor, awaiting buyer", item.id)
    return HandoffOutcome(item=item, completed=False)


async def vendor_confirm_handoff(
    ctx: FulfillmentContext, user: AuthUser, item_id: uuid.UUID
) -> HandoffOutcome:
    """Vendor confirms after the buyer did. A failed transfer keeps the handoff."""
    item, vendor, order = await load_vendor_item(ctx, user, item_id)

    if item.vendor_confirmed_at is not None:
        raise errors.already_confirmed()
    if item.buyer_confirmed_at is None:
        raise errors.not_confirmable(
            "Buyer has not confirmed receipt yet. Wait for buyer to confirm first."
        )

    await ensure_payout_eligible(ctx, vendor)
    result = await acknowledge(ctx, HandoffRole.VENDOR, item)
    if not result.completed:
        return HandoffOutcome(
            item=item, completed=False, window_expires_at=result.window_expires_at
        )

    target = await build_order_item_target(ctx.db, item, vendor)
    payout = await fire_payout(ctx, target)
    if payout.failed:
        logger.warning(
            "Handoff for order item %s stands; payout queued for retry", item.id
        )
    return await _finish(ctx, item, payout)


ITEM_ACTIONS = ("ready", "missed", "reschedule")


async def vendor_update_item(
    ctx: FulfillmentContext,
    user: AuthUser,
    item_id: uuid.UUID,
    action: str,
    rescheduled_to: Optional[date] = None,
) -> OrderItem:
    """Vendor-only status change on an order item: ready, missed or reschedule."""
    item, vendor, order = await load_vendor_item(ctx, user, item_id)

    if action == "ready":
        await mark_ready(ctx, item)
        notify(
            ctx.db,
            order.buyer_user_id,
            NotificationType.ORDER_READY,
            order_number=order.order_number,
            item_title=item.listing_title,
            vendor_name=vendor.business_name,
            order_item_id=item.id,
        )
    elif action == "missed":
        await mark_missed(ctx, item)
        notify(
            ctx.db,
            order.buyer_user_id,
            NotificationType.PICKUP_MISSED,
            order_number=order.order_number,
            item_title=item.listing_title,
            order_item_id=item.id,
        )
    elif action == "reschedule":
        await reschedule(ctx, item, rescheduled_to)
    else:
        raise errors.FulfillmentError(
            400,
            errors.PICKUP_INVALID_ACTION,
            "Invalid action. Use: ready, missed, or reschedule",
        )

    await ctx.db.commit()
    await ctx.db.refresh(item)
    logger.info("Order item %s: vendor action %s", item.id, action)
    return item


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


REPORTABLE_STATUSES = (OrderItemStatus.READY, OrderItemStatus.FULFILLED)
ISSUE_ACTIONS = ("confirm_delivery", "issue_refund")


async def buyer_report_issue(
    ctx: FulfillmentContext,
    user: AuthUser,
    item_id: uuid.UUID,
    description: Optional[str] = None,
) -> OrderItem:
    """Buyer says the item was not received. One report per item."""
    item, vendor, order = await load_buyer_item(ctx, user, item_id)

    if item.issue_reported_at is not None:
        raise errors.FulfillmentError(
            400,
            errors.ISSUE_ALREADY_REPORTED,
            "An issue has already been reported for this item",
        )
    if item.status not in REPORTABLE_STATUSES:
        raise errors.not_confirmable(
            "Issues can only be reported for items that are ready or fulfilled",
            status=item.status.value,
        )

    description = description or "Buyer reported not receiving item"
    result = await ctx.db.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id, OrderItem.issue_reported_at.is_(None))
        .values(
            issue_reported_at=ctx.now(),
            issue_reported_by=HandoffRole.BUYER.value,
            issue_description=description,
            issue_status=IssueStatus.OPEN,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await ctx.db.rollback()
        raise errors.FulfillmentError(
            400,
            errors.ISSUE_ALREADY_REPORTED,
            "An issue has already been reported for this item",
        )

    notify(
        ctx.db,
        vendor.user_id,
        NotificationType.PICKUP_ISSUE_REPORTED,
        order_number=order.order_number,
        item_title=item.listing_title,
        order_item_id=item.id,
        description=description,
    )
    await ctx.db.commit()
    await ctx.db.refresh(item)
    logger.info("Buyer reported an issue on order item %s", item.id)
    return item


async def vendor_resolve_issue(
    ctx: FulfillmentContext,
    user: AuthUser,
    item_id: uuid.UUID,
    action: str,
    notes: Optional[str] = None,
) -> OrderItem:
    """Vendor answers a buyer's issue report.

    ``confirm_delivery`` stands by the handoff and leaves the dispute for
    platform review. ``issue_refund`` cancels the item and refunds its
    subtotal to the buyer's card when the order was paid through Stripe.
    A failed refund is logged and does not undo the resolution.
    """
    if action not in ISSUE_ACTIONS:
        raise errors.FulfillmentError(
            400,
            errors.PICKUP_INVALID_ACTION,
            "Invalid action. Use: confirm_delivery or issue_refund",
        )

    item, vendor, order = await load_vendor_item(ctx, user, item_id)
    if item.issue_reported_at is None:
        raise errors.FulfillmentError(
            400, errors.ISSUE_NOT_OPEN, "No issue has been reported for this item"
        )
    if item.issue_status == IssueStatus.RESOLVED:
        raise errors.FulfillmentError(
            400, errors.ISSUE_NOT_OPEN, "This issue has already been resolved"
        )

    now = ctx.now()
    suffix = f" Notes: {notes}" if notes else ""
    values = {
        "issue_status": IssueStatus.RESOLVED,
        "issue_resolved_at": now,
        "issue_resolved_by": user.user_id,
    }
    if action == "confirm_delivery":
        values["issue_admin_notes"] = f"Vendor confirmed delivery.{suffix}"
        resolution = "The vendor confirmed the item was delivered."
    else:
        values.update(
            status=OrderItemStatus.CANCELLED,
            cancelled_at=now,
            cancellation_reason=f"Vendor-initiated refund for reported issue.{suffix}",
            refund_amount_cents=item.subtotal_cents,
        )
        resolution = "The vendor has issued a refund for this item."

    result = await ctx.db.execute(
        update(OrderItem)
        .where(OrderItem.id == item.id, OrderItem.issue_status == IssueStatus.OPEN)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await ctx.db.rollback()
        raise errors.FulfillmentError(
            400, errors.ISSUE_NOT_OPEN, "This issue has already been resolved"
        )

    notify(
        ctx.db,
        order.buyer_user_id,
        NotificationType.ISSUE_RESOLVED,
        order_number=order.order_number,
        item_title=item.listing_title,
        order_item_id=item.id,
        resolution=resolution,
    )
    await ctx.db.commit()

    if action == "confirm_delivery":
        logger.warning(
            "Vendor %s disputes the issue on order item %s; needs platform review",
            vendor.id,
            item.id,
        )
    else:
        await _refund_item(ctx, item.id, order, item.subtotal_cents)
        # The cancelled item no longer holds the order open
        await complete_order_if_ready(ctx.db, order.id, now)

    await ctx.db.refresh(item)
    logger.info("Issue on order item %s resolved: %s", item.id, action)
    return item


async def _refund_item(
    ctx: FulfillmentContext, item_id: uuid.UUID, order: Order, amount_cents: int
) -> None:
    if order.payment_method != PaymentMethod.STRIPE:
        return
    if not order.stripe_payment_intent_id or amount_cents <= 0:
        return

    try:
        refund = await ctx.gateway.create_refund(
            order.stripe_payment_intent_id,
            amount_cents,
            idempotency_key=f"refund-{item_id}",
        )
    except PayoutGatewayError as exc:
        logger.error("Refund for order item %s failed: %s", item_id, exc.message)
        return

    await ctx.db.execute(
        update(OrderItem)
        .where(OrderItem.id == item_id)
        .values(stripe_refund_id=refund.refund_id)
        .execution_options(synchronize_session=False)
    )
    await ctx.db.commit()
    logger.info(
        "Refunded %dc for order item %s (refund=%s)",
        amount_cents,
        item_id,
        refund.refund_id,
    )
