"""Vendor payouts for completed handoffs.

A payout row is inserted (status processing) before the transfer is sent;
the partial unique index on the target lets only one active row exist, so
that insert is what locks in the transfer. The fee deduction is reserved
on the row under a vendor row lock and only written to the ledger once the
transfer has gone out.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from libs.common.logging import get_logger
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.fees import (
    calculate_auto_deduct_amount,
    get_outstanding_balance,
    lock_vendor_for_fees,
    record_fee_credit,
)
from services.fulfillment_service.models import (
    INACTIVE_PAYOUT_STATUSES,
    MarketBoxPickup,
    MarketBoxSubscription,
    NotificationType,
    Order,
    OrderItem,
    OrderItemStatus,
    PaymentMethod,
    PayoutStatus,
    VendorPayout,
    VendorProfile,
)
from services.fulfillment_service.pricing import calculate_pickup_payout_cents
from services.fulfillment_service.services.notifications import notify
from services.fulfillment_service.stripe_client import PayoutGatewayError
from services.fulfillment_service.tips import allocate_tip_share
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class PayoutTarget:
    """Plain values describing what to pay; safe to use after a rollback."""

    vendor_profile_id: uuid.UUID
    vendor_user_id: str
    stripe_account_id: Optional[str]
    base_amount_cents: int
    tip_share_cents: int = 0
    order_id: Optional[uuid.UUID] = None
    order_item_id: Optional[uuid.UUID] = None
    pickup_id: Optional[uuid.UUID] = None
    label: str = ""

    @property
    def key(self) -> str:
        if self.order_item_id:
            return f"{self.order_id}-{self.order_item_id}"
        return f"pickup-{self.pickup_id}"


@dataclass
class PayoutOutcome:
    payout: Optional[VendorPayout]
    failed: bool = False
    duplicate: bool = False
    error: Optional[str] = None

    @property
    def amount_cents(self) -> int:
        return self.payout.amount_cents if self.payout else 0


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


async def ensure_payout_eligible(
    ctx: FulfillmentContext, vendor: VendorProfile
) -> bool:
    """Check the vendor can receive transfers before completing a handoff.

    A false cached flag is refreshed from Stripe first and the cache
    updated; the action is refused only if the live answer is also no.
    Returns False when the payout will be skipped (no account, outside
    production).
    """
    if not vendor.stripe_account_id:
        if ctx.settings.is_production:
            raise errors.FulfillmentError(
                400,
                errors.PAYOUTS_NOT_ENABLED,
                "Connect a Stripe account before completing handoffs",
            )
        return False

    if vendor.stripe_payouts_enabled:
        return True

    try:
        account = await ctx.gateway.retrieve_account(vendor.stripe_account_id)
    except PayoutGatewayError as exc:
        logger.warning(
            "Live payout status check failed for vendor %s: %s", vendor.id, exc
        )
        account = None

    if account is not None:
        vendor.stripe_payouts_enabled = account.payouts_enabled
        vendor.stripe_status_checked_at = ctx.now()
        await ctx.db.commit()
        logger.info(
            "Refreshed payout status for vendor %s: payouts_enabled=%s",
            vendor.id,
            account.payouts_enabled,
        )

    if not vendor.stripe_payouts_enabled:
        raise errors.FulfillmentError(
            400,
            errors.PAYOUTS_NOT_ENABLED,
            "Stripe payouts are not enabled for this vendor yet. "
            "Please complete Stripe onboarding.",
        )
    return True


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_active_payout(
    db: AsyncSession,
    *,
    order_item_id: Optional[uuid.UUID] = None,
    pickup_id: Optional[uuid.UUID] = None,
) -> Optional[VendorPayout]:
    """Return the payout holding the target's slot (not failed or cancelled)."""
    query = select(VendorPayout).where(
        VendorPayout.status.notin_(INACTIVE_PAYOUT_STATUSES)
    )
    if order_item_id is not None:
        query = query.where(VendorPayout.order_item_id == order_item_id)
    else:
        query = query.where(VendorPayout.pickup_id == pickup_id)
    result = await db.execute(query.limit(1))
    return result.scalar_one_or_none()


async def count_tip_eligible_items(db: AsyncSession, order_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(OrderItem.id)).where(
            OrderItem.order_id == order_id,
            OrderItem.status != OrderItemStatus.CANCELLED,
        )
    )
    return int(result.scalar_one())


async def build_order_item_target(
    db: AsyncSession, item: OrderItem, vendor: VendorProfile
) -> PayoutTarget:
    order = await db.get(Order, item.order_id)
    item_count = await count_tip_eligible_items(db, item.order_id)
    tip_share = allocate_tip_share(
        order.tip_amount_cents, order.tip_on_platform_fee_cents, item_count
    )
    base_amount = item.vendor_payout_cents
    if order.payment_method != PaymentMethod.STRIPE:
        # Buyer paid the vendor directly; the platform holds nothing to transfer
        base_amount, tip_share = 0, 0
    return PayoutTarget(
        vendor_profile_id=vendor.id,
        vendor_user_id=vendor.user_id,
        stripe_account_id=vendor.stripe_account_id,
        base_amount_cents=base_amount,
        tip_share_cents=tip_share,
        order_id=order.id,
        order_item_id=item.id,
        label=f"order #{order.order_number}",
    )


async def build_pickup_target(
    ctx: FulfillmentContext,
    pickup: MarketBoxPickup,
    subscription: MarketBoxSubscription,
    vendor: VendorProfile,
) -> PayoutTarget:
    return PayoutTarget(
        vendor_profile_id=vendor.id,
        vendor_user_id=vendor.user_id,
        stripe_account_id=vendor.stripe_account_id,
        base_amount_cents=calculate_pickup_payout_cents(
            subscription.total_paid_cents, subscription.term_weeks, ctx.fees
        ),
        pickup_id=pickup.id,
        label=f"market box week {pickup.week_number}",
    )


# ---------------------------------------------------------------------------
# Firing
# ---------------------------------------------------------------------------


async def _reserve_fee_deduction(ctx: FulfillmentContext, target: PayoutTarget) -> int:
    """Lock the vendor row and size the deduction. Errors mean no deduction."""
    try:
        await lock_vendor_for_fees(ctx.db, target.vendor_profile_id)
        balance = await get_outstanding_balance(ctx.db, target.vendor_profile_id)
    except SQLAlchemyError:
        logger.exception(
            "Fee balance check failed for vendor %s, paying without deduction",
            target.vendor_profile_id,
        )
        await ctx.db.rollback()
        return 0
    return calculate_auto_deduct_amount(
        target.base_amount_cents, balance, ctx.settings.AUTO_DEDUCT_MAX_PERCENT
    )


def _initial_status(amount: int, deduction: int) -> PayoutStatus:
    if amount > 0:
        return PayoutStatus.PROCESSING
    if deduction > 0:
        return PayoutStatus.FEE_OFFSET
    return PayoutStatus.SKIPPED_ZERO


async def _skip_in_dev(ctx: FulfillmentContext, target: PayoutTarget) -> PayoutOutcome:
    payout_id = uuid.uuid4()
    payout = VendorPayout(
        id=payout_id,
        order_item_id=target.order_item_id,
        pickup_id=target.pickup_id,
        order_id=target.order_id,
        vendor_profile_id=target.vendor_profile_id,
        amount_cents=target.base_amount_cents + target.tip_share_cents,
        base_amount_cents=target.base_amount_cents,
        tip_share_cents=target.tip_share_cents,
        stripe_transfer_id=f"dev_skip_{payout_id}",
        status=PayoutStatus.SKIPPED_DEV,
        first_attempt_at=ctx.now(),
        created_at=ctx.now(),
    )
    ctx.db.add(payout)
    try:
        await ctx.db.commit()
    except IntegrityError:
        await ctx.db.rollback()
        return await _duplicate(ctx, target)
    logger.info("Skipped payout for %s: vendor has no Stripe account", target.key)
    return PayoutOutcome(payout=payout)


async def _duplicate(ctx: FulfillmentContext, target: PayoutTarget) -> PayoutOutcome:
    existing = await get_active_payout(
        ctx.db, order_item_id=target.order_item_id, pickup_id=target.pickup_id
    )
    logger.info(
        "Payout for %s already exists (%s), not transferring again",
        target.key,
        existing.id if existing else None,
    )
    return PayoutOutcome(payout=existing, duplicate=True)


async def fire_payout(
    ctx: FulfillmentContext,
    target: PayoutTarget,
    retry_of_id: Optional[uuid.UUID] = None,
    first_attempt_at: Optional[datetime] = None,
) -> PayoutOutcome:
    """Pay the vendor for one completed handoff, at most once.

    Never raises for transfer failures: a failed row is recorded and the
    outcome says so. Callers decide whether that undoes the handoff.
    Retries pass the failed row's ``first_attempt_at`` so the retry age
    is measured from the first attempt.
    """
    first_attempt_at = first_attempt_at or ctx.now()
    if await get_active_payout(
        ctx.db, order_item_id=target.order_item_id, pickup_id=target.pickup_id
    ):
        return await _duplicate(ctx, target)

    owed = target.base_amount_cents + target.tip_share_cents
    if not target.stripe_account_id and owed > 0:
        if not ctx.settings.is_production:
            return await _skip_in_dev(ctx, target)
        payout = VendorPayout(
            order_item_id=target.order_item_id,
            pickup_id=target.pickup_id,
            order_id=target.order_id,
            vendor_profile_id=target.vendor_profile_id,
            retry_of_id=retry_of_id,
            amount_cents=target.base_amount_cents + target.tip_share_cents,
            base_amount_cents=target.base_amount_cents,
            tip_share_cents=target.tip_share_cents,
            status=PayoutStatus.FAILED,
            failure_reason="Vendor has no connected Stripe account",
            first_attempt_at=first_attempt_at,
            created_at=ctx.now(),
        )
        ctx.db.add(payout)
        await ctx.db.commit()
        logger.error("Payout for %s failed: no Stripe account", target.key)
        return PayoutOutcome(payout=payout, failed=True, error=payout.failure_reason)

    deduction = await _reserve_fee_deduction(ctx, target)
    amount = target.base_amount_cents - deduction + target.tip_share_cents

    payout = VendorPayout(
        id=uuid.uuid4(),
        order_item_id=target.order_item_id,
        pickup_id=target.pickup_id,
        order_id=target.order_id,
        vendor_profile_id=target.vendor_profile_id,
        retry_of_id=retry_of_id,
        amount_cents=amount,
        base_amount_cents=target.base_amount_cents,
        fee_deduction_cents=deduction,
        tip_share_cents=target.tip_share_cents,
        status=_initial_status(amount, deduction),
        first_attempt_at=first_attempt_at,
        created_at=ctx.now(),
    )
    ctx.db.add(payout)
    try:
        await ctx.db.flush()
    except IntegrityError:
        await ctx.db.rollback()
        return await _duplicate(ctx, target)

    if amount <= 0:
        # Nothing to transfer
        await _settle_fee_deduction(ctx, target, payout)
        await ctx.db.commit()
        if deduction > 0:
            logger.info(
                "Payout for %s fully offset by %dc fee balance", target.key, deduction
            )
        else:
            logger.info("Nothing owed for %s, no transfer made", target.key)
        return PayoutOutcome(payout=payout)

    # Publish the claim (and the reserved deduction) before calling Stripe
    await ctx.db.commit()

    try:
        transfer = await ctx.gateway.create_transfer(
            amount_cents=amount,
            destination_account_id=target.stripe_account_id,
            order_id=str(target.order_id) if target.order_id else None,
            order_item_id=str(target.order_item_id) if target.order_item_id else None,
            pickup_id=str(target.pickup_id) if target.pickup_id else None,
            idempotency_key=f"transfer-{target.key}-{payout.id}",
        )
    except PayoutGatewayError as exc:
        payout.status = PayoutStatus.FAILED
        payout.failure_reason = exc.message
        notify(
            ctx.db,
            target.vendor_user_id,
            NotificationType.PAYOUT_FAILED,
            order_label=target.label,
            payout_id=payout.id,
        )
        await ctx.db.commit()
        logger.error(
            "Transfer for %s failed (%dc): %s", target.key, amount, exc.message
        )
        return PayoutOutcome(payout=payout, failed=True, error=exc.message)

    payout.stripe_transfer_id = transfer.transfer_id
    await _settle_fee_deduction(ctx, target, payout)
    notify(
        ctx.db,
        target.vendor_user_id,
        NotificationType.PAYOUT_PROCESSED,
        amount_cents=amount,
        payout_id=payout.id,
    )
    await ctx.db.commit()
    logger.info(
        "Transferred %dc for %s (transfer=%s, fee_deduction=%dc, tip=%dc)",
        amount,
        target.key,
        transfer.transfer_id,
        deduction,
        target.tip_share_cents,
    )
    return PayoutOutcome(payout=payout)


async def _settle_fee_deduction(
    ctx: FulfillmentContext, target: PayoutTarget, payout: VendorPayout
) -> None:
    if payout.fee_deduction_cents <= 0:
        return
    await record_fee_credit(
        ctx.db,
        target.vendor_profile_id,
        payout.fee_deduction_cents,
        f"Auto-deducted from payout for {target.label or target.key}",
        related_order_id=target.order_id,
        payout_id=payout.id,
    )
    payout.fee_credited_at = ctx.now()
