"""Market box pickup flows for vendors and buyers."""

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from libs.auth.models import AuthUser
from libs.common.logging import get_logger
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.models import (
    HandoffRole,
    MarketBoxOffering,
    MarketBoxPickup,
    MarketBoxSubscription,
    NotificationType,
    SubscriptionStatus,
    VendorProfile,
)
from services.fulfillment_service.services import confirmation
from services.fulfillment_service.services.completion import (
    complete_subscription_if_ready,
)
from services.fulfillment_service.services.notifications import notify
from services.fulfillment_service.services.payouts import (
    PayoutOutcome,
    build_pickup_target,
    ensure_payout_eligible,
    fire_payout,
)
from sqlalchemy import select

logger = get_logger(__name__)

VENDOR_ACTIONS = ("ready", "picked_up", "missed", "reschedule")


@dataclass
class PickupOutcome:
    pickup: MarketBoxPickup
    message: str
    completed: bool = False
    subscription_completed: bool = False
    payout: Optional[PayoutOutcome] = None
    window_expires_at: Optional[datetime] = None

    @property
    def waiting_for_buyer(self) -> bool:
        return (
            not self.completed
            and self.pickup.vendor_confirmed_at is not None
            and self.pickup.buyer_confirmed_at is None
        )

    @property
    def waiting_for_vendor(self) -> bool:
        return (
            not self.completed
            and self.pickup.buyer_confirmed_at is not None
            and self.pickup.vendor_confirmed_at is None
        )


@dataclass
class _PickupContext:
    pickup: MarketBoxPickup
    subscription: MarketBoxSubscription
    offering: MarketBoxOffering
    vendor: VendorProfile


def _pickup_query():
    return (
        select(MarketBoxPickup, MarketBoxSubscription, MarketBoxOffering, VendorProfile)
        .join(
            MarketBoxSubscription,
            MarketBoxSubscription.id == MarketBoxPickup.subscription_id,
        )
        .join(MarketBoxOffering, MarketBoxOffering.id == MarketBoxSubscription.offering_id)
        .join(VendorProfile, VendorProfile.id == MarketBoxOffering.vendor_profile_id)
    )


async def _load_for_vendor(
    ctx: FulfillmentContext, user: AuthUser, pickup_id: uuid.UUID
) -> _PickupContext:
    result = await ctx.db.execute(
        _pickup_query().where(
            MarketBoxPickup.id == pickup_id, VendorProfile.user_id == user.user_id
        )
    )
    row = result.first()
    if row is None:
        raise errors.pickup_not_found()
    return _PickupContext(*row)


async def _load_for_buyer(
    ctx: FulfillmentContext,
    user: AuthUser,
    subscription_id: uuid.UUID,
    pickup_id: uuid.UUID,
) -> _PickupContext:
    result = await ctx.db.execute(
        _pickup_query().where(
            MarketBoxPickup.id == pickup_id,
            MarketBoxPickup.subscription_id == subscription_id,
            MarketBoxSubscription.buyer_user_id == user.user_id,
        )
    )
    row = result.first()
    if row is None:
        raise errors.pickup_not_found()
    loaded = _PickupContext(*row)
    if loaded.subscription.status != SubscriptionStatus.ACTIVE:
        raise errors.FulfillmentError(
            400,
            errors.SUBSCRIPTION_NOT_ACTIVE,
            "Subscription is not active",
        )
    return loaded


async def _complete_pickup(
    ctx: FulfillmentContext, loaded: _PickupContext, message: str
) -> PickupOutcome:
    """Pay the vendor for the week and roll the subscription up."""
    pickup = loaded.pickup
    subscription_id = loaded.subscription.id
    buyer_user_id = loaded.subscription.buyer_user_id
    offering_name = loaded.offering.name
    week_number = pickup.week_number
    target = await build_pickup_target(
        ctx, pickup, loaded.subscription, loaded.vendor
    )
    payout = await fire_payout(ctx, target)
    if payout.failed:
        logger.warning("Pickup %s stands; payout queued for retry", target.pickup_id)

    notify(
        ctx.db,
        buyer_user_id,
        NotificationType.MARKET_BOX_PICKUP_CONFIRMED,
        week_number=week_number,
        offering_name=offering_name,
        pickup_id=target.pickup_id,
    )
    subscription_completed = await complete_subscription_if_ready(
        ctx.db, subscription_id, ctx.now()
    )
    await ctx.db.refresh(pickup)
    return PickupOutcome(
        pickup=pickup,
        message=message,
        completed=True,
        subscription_completed=subscription_completed,
        payout=payout,
    )


async def _acknowledge_pickup(
    ctx: FulfillmentContext, loaded: _PickupContext, role: HandoffRole
) -> PickupOutcome:
    result = await confirmation.acknowledge(ctx, role, loaded.pickup)
    if result.completed:
        return await _complete_pickup(ctx, loaded, "Pickup confirmed by both parties")

    other = "buyer" if role == HandoffRole.VENDOR else "vendor"
    if role == HandoffRole.BUYER:
        notify(
            ctx.db,
            loaded.vendor.user_id,
            NotificationType.PICKUP_CONFIRMATION_NEEDED,
            order_number=f"market box week {loaded.pickup.week_number}",
            pickup_id=loaded.pickup.id,
            window_seconds=ctx.settings.CONFIRMATION_WINDOW_SECONDS,
        )
        await ctx.db.commit()
    return PickupOutcome(
        pickup=result.record,
        message=(
            f"Confirmed. Waiting for the {other} to confirm within "
            f"{ctx.settings.CONFIRMATION_WINDOW_SECONDS} seconds."
        ),
        window_expires_at=result.window_expires_at,
    )


async def vendor_update_pickup(
    ctx: FulfillmentContext,
    user: AuthUser,
    pickup_id: uuid.UUID,
    action: Optional[str],
    vendor_notes: Optional[str] = None,
    rescheduled_to: Optional[date] = None,
) -> PickupOutcome:
    """Apply a vendor action (ready, picked_up, missed, reschedule) or save notes."""
    loaded = await _load_for_vendor(ctx, user, pickup_id)
    pickup = loaded.pickup

    if action is not None and action not in VENDOR_ACTIONS:
        raise errors.FulfillmentError(
            400,
            errors.PICKUP_INVALID_ACTION,
            "Invalid action. Use: ready, picked_up, missed, or reschedule",
        )

    if vendor_notes is not None:
        pickup.vendor_notes = vendor_notes
        await ctx.db.flush()

    if action is None:
        await ctx.db.commit()
        await ctx.db.refresh(pickup)
        return PickupOutcome(pickup=pickup, message="Pickup notes updated")

    if action == "picked_up":
        if pickup.buyer_confirmed_at is not None:
            await ensure_payout_eligible(ctx, loaded.vendor)
        return await _acknowledge_pickup(ctx, loaded, HandoffRole.VENDOR)

    if action == "ready":
        await confirmation.mark_ready(ctx, pickup)
        notification_type = NotificationType.MARKET_BOX_PICKUP_READY
        message = "Pickup marked as ready"
    elif action == "missed":
        await confirmation.mark_missed(ctx, pickup)
        notification_type = NotificationType.MARKET_BOX_PICKUP_MISSED
        message = "Pickup marked as missed"
    else:
        await confirmation.reschedule(ctx, pickup, rescheduled_to)
        notification_type = None
        message = f"Pickup rescheduled to {rescheduled_to.isoformat()}"

    if notification_type is not None:
        notify(
            ctx.db,
            loaded.subscription.buyer_user_id,
            notification_type,
            week_number=pickup.week_number,
            offering_name=loaded.offering.name,
            pickup_id=pickup.id,
        )
    await ctx.db.commit()
    await ctx.db.refresh(pickup)
    logger.info("Pickup %s: vendor action %s", pickup.id, action)
    return PickupOutcome(pickup=pickup, message=message)


async def buyer_confirm_pickup(
    ctx: FulfillmentContext,
    user: AuthUser,
    subscription_id: uuid.UUID,
    pickup_id: uuid.UUID,
) -> PickupOutcome:
    """Buyer confirms they collected one week's box."""
    loaded = await _load_for_buyer(ctx, user, subscription_id, pickup_id)
    return await _acknowledge_pickup(ctx, loaded, HandoffRole.BUYER)
