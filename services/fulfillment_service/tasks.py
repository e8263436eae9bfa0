"""Background retry of vendor payouts whose transfer failed."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import utc_now
from libs.common.logging import get_logger
from libs.db.config import AsyncSessionLocal
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.models import (
    INACTIVE_PAYOUT_STATUSES,
    MarketBoxPickup,
    MarketBoxSubscription,
    OrderItem,
    OrderItemStatus,
    PayoutStatus,
    PickupStatus,
    VendorPayout,
    VendorProfile,
)
from services.fulfillment_service.services.payouts import (
    PayoutTarget,
    build_order_item_target,
    build_pickup_target,
    ensure_payout_eligible,
    fire_payout,
)
from services.fulfillment_service.stripe_client import (
    StripeConnectClient,
    get_payout_gateway,
)
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import aliased

logger = get_logger(__name__)


def _is_latest_failure():
    """Failed row that no retry has been attempted from yet."""
    later_attempt = aliased(VendorPayout)
    return and_(
        VendorPayout.status == PayoutStatus.FAILED,
        ~select(later_attempt.id)
        .where(later_attempt.retry_of_id == VendorPayout.id)
        .exists(),
    )


def _target_is_fully_confirmed():
    item_done = (
        select(OrderItem.id)
        .where(
            OrderItem.id == VendorPayout.order_item_id,
            OrderItem.status == OrderItemStatus.FULFILLED,
            OrderItem.buyer_confirmed_at.is_not(None),
            OrderItem.vendor_confirmed_at.is_not(None),
        )
        .exists()
    )
    pickup_done = (
        select(MarketBoxPickup.id)
        .where(
            MarketBoxPickup.id == VendorPayout.pickup_id,
            MarketBoxPickup.status == PickupStatus.PICKED_UP,
            MarketBoxPickup.buyer_confirmed_at.is_not(None),
            MarketBoxPickup.vendor_confirmed_at.is_not(None),
        )
        .exists()
    )
    return or_(item_done, pickup_done)


def _target_has_active_payout():
    active = aliased(VendorPayout)
    return (
        select(active.id)
        .where(
            or_(
                active.order_item_id == VendorPayout.order_item_id,
                active.pickup_id == VendorPayout.pickup_id,
            ),
            active.status.notin_(INACTIVE_PAYOUT_STATUSES),
        )
        .exists()
    )


async def cancel_expired_failures(db, cutoff: datetime, now: datetime) -> int:
    """Stop retrying chains whose first attempt is older than ``cutoff``.

    The latest failed row of each such chain becomes cancelled, which
    takes it out of the retry selection and leaves it for manual
    resolution.
    """
    result = await db.execute(
        select(VendorPayout.id, VendorPayout.amount_cents).where(
            _is_latest_failure(), VendorPayout.first_attempt_at < cutoff
        )
    )
    expired = result.all()
    if not expired:
        return 0

    await db.execute(
        update(VendorPayout)
        .where(
            VendorPayout.id.in_([row.id for row in expired]),
            VendorPayout.status == PayoutStatus.FAILED,
        )
        .values(status=PayoutStatus.CANCELLED, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.warning(
        "Cancelled %d failed payouts after retry window (total %dc); "
        "manual resolution required",
        len(expired),
        sum(row.amount_cents for row in expired),
    )
    return len(expired)


async def _build_retry_target(
    ctx: FulfillmentContext, payout: VendorPayout
) -> Optional[PayoutTarget]:
    """Rebuild what to pay from current state; None when it should not be paid now."""
    vendor = await ctx.db.get(VendorProfile, payout.vendor_profile_id)
    if vendor is None:
        return None

    try:
        ready = await ensure_payout_eligible(ctx, vendor)
    except errors.FulfillmentError as exc:
        logger.info(
            "Skipping payout retry %s: vendor %s not payout-ready (%s)",
            payout.id,
            vendor.id,
            exc.message,
        )
        return None
    if not ready:
        return None

    if payout.order_item_id is not None:
        item = await ctx.db.get(OrderItem, payout.order_item_id)
        return await build_order_item_target(ctx.db, item, vendor)
    pickup = await ctx.db.get(MarketBoxPickup, payout.pickup_id)
    subscription = await ctx.db.get(MarketBoxSubscription, pickup.subscription_id)
    return await build_pickup_target(ctx, pickup, subscription, vendor)


async def retry_failed_payouts(
    session_factory=AsyncSessionLocal,
    gateway: Optional[StripeConnectClient] = None,
    now: Optional[datetime] = None,
) -> dict[str, int]:
    """Retry recent failed payouts, oldest first.

    Only the latest failed attempt of a fully confirmed handoff with no
    active payout is selected. Chains whose first attempt is older than
    PAYOUT_RETRY_MAX_AGE_DAYS are cancelled instead.
    """
    settings = get_settings()
    gateway = gateway or get_payout_gateway()
    now = now or utc_now()
    cutoff = now - timedelta(days=settings.PAYOUT_RETRY_MAX_AGE_DAYS)
    stats = {"retried": 0, "succeeded": 0, "failed": 0, "skipped": 0, "cancelled": 0}

    async with session_factory() as db:
        ctx = FulfillmentContext(
            db=db, gateway=gateway, settings=settings, clock=lambda: now
        )
        stats["cancelled"] = await cancel_expired_failures(db, cutoff, now)

        result = await db.execute(
            select(VendorPayout)
            .where(
                _is_latest_failure(),
                VendorPayout.first_attempt_at >= cutoff,
                _target_is_fully_confirmed(),
                ~_target_has_active_payout(),
            )
            .order_by(VendorPayout.created_at.asc())
            .limit(settings.PAYOUT_RETRY_BATCH_SIZE)
        )
        candidates = list(result.scalars().all())

        for failed in candidates:
            # A previous iteration may have rolled back and expired it
            await db.refresh(failed)
            failed_id = failed.id
            first_attempt_at = failed.first_attempt_at

            target = await _build_retry_target(ctx, failed)
            if target is None:
                stats["skipped"] += 1
                continue

            outcome = await fire_payout(
                ctx, target, retry_of_id=failed_id, first_attempt_at=first_attempt_at
            )
            if outcome.duplicate:
                stats["skipped"] += 1
                continue
            stats["retried"] += 1
            if outcome.failed:
                stats["failed"] += 1
                logger.warning(
                    "Retry of payout %s failed: %s", failed_id, outcome.error
                )
            else:
                stats["succeeded"] += 1
                logger.info("Retry of payout %s succeeded", failed_id)

    if stats["retried"] or stats["cancelled"]:
        logger.info("Payout retry run: %s", stats)
    return stats
