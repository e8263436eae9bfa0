"""Unit tests for vendor payouts: eligibility, fee deduction, exactly-once."""

import pytest
from services.fulfillment_service import errors
from services.fulfillment_service.context import FulfillmentContext
from services.fulfillment_service.fees import get_fee_ledger, get_outstanding_balance
from services.fulfillment_service.models import (
    FeeEntryType,
    Notification,
    NotificationType,
    PayoutStatus,
    VendorPayout,
)
from services.fulfillment_service.services import payouts
from services.fulfillment_service.services.payouts import (
    build_order_item_target,
    ensure_payout_eligible,
    fire_payout,
)
from sqlalchemy import func, select
from tests.factories import (
    FeeLedgerEntryFactory,
    VendorPayoutFactory,
    VendorProfileFactory,
    persist,
    seed_order,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _payout_rows(db, order_item_id):
    result = await db.execute(
        select(VendorPayout)
        .where(VendorPayout.order_item_id == order_item_id)
        .order_by(VendorPayout.created_at)
    )
    return list(result.scalars().all())


async def _notifications(db, notification_type):
    result = await db.execute(
        select(Notification).where(Notification.notification_type == notification_type)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Fee deduction
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payout_deducts_outstanding_fee_balance(ctx, gateway):
    """Payout 1000 against a 300 balance transfers 700 and credits 300 once."""
    vendor, order, (item,) = await seed_order(ctx.db)
    await persist(
        ctx.db, FeeLedgerEntryFactory.create(vendor_profile_id=vendor.id, amount_cents=300)
    )

    target = await build_order_item_target(ctx.db, item, vendor)
    outcome = await fire_payout(ctx, target)

    assert outcome.failed is False
    assert outcome.payout.amount_cents == 700
    assert outcome.payout.fee_deduction_cents == 300
    assert outcome.payout.status == PayoutStatus.PROCESSING
    assert outcome.payout.stripe_transfer_id == "tr_test_1"
    assert outcome.payout.fee_credited_at is not None
    assert [t["amount_cents"] for t in gateway.transfers] == [700]

    credits = [
        entry
        for entry in await get_fee_ledger(ctx.db, vendor.id)
        if entry.entry_type == FeeEntryType.CREDIT
    ]
    assert len(credits) == 1
    assert credits[0].amount_cents == 300
    assert credits[0].payout_id == outcome.payout.id
    assert await get_outstanding_balance(ctx.db, vendor.id) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_tip_share_is_added_after_fee_deduction(ctx, gateway):
    vendor, order, items = await seed_order(
        ctx.db, item_count=3, tip_amount_cents=100, tip_on_platform_fee_cents=10
    )
    await persist(
        ctx.db, FeeLedgerEntryFactory.create(vendor_profile_id=vendor.id, amount_cents=300)
    )

    target = await build_order_item_target(ctx.db, items[0], vendor)
    outcome = await fire_payout(ctx, target)

    assert target.tip_share_cents == 30
    assert outcome.payout.amount_cents == 1000 - 300 + 30
    assert gateway.transfers[0]["amount_cents"] == 730


@pytest.mark.asyncio
@pytest.mark.unit
async def test_payout_fully_offset_by_fees_transfers_nothing(ctx, gateway):
    vendor, order, (item,) = await seed_order(ctx.db)
    item.vendor_payout_cents = 200
    await persist(
        ctx.db, FeeLedgerEntryFactory.create(vendor_profile_id=vendor.id, amount_cents=500)
    )

    target = await build_order_item_target(ctx.db, item, vendor)
    outcome = await fire_payout(ctx, target)

    assert outcome.payout.status == PayoutStatus.FEE_OFFSET
    assert outcome.payout.amount_cents == 0
    assert gateway.transfers == []
    assert await get_outstanding_balance(ctx.db, vendor.id) == 300


@pytest.mark.asyncio
@pytest.mark.unit
async def test_nothing_owed_is_not_recorded_as_fee_offset(ctx, gateway):
    vendor, order, (item,) = await seed_order(ctx.db)
    item.vendor_payout_cents = 0
    await ctx.db.commit()

    target = await build_order_item_target(ctx.db, item, vendor)
    outcome = await fire_payout(ctx, target)

    assert outcome.failed is False
    assert outcome.payout.status == PayoutStatus.SKIPPED_ZERO
    assert outcome.payout.amount_cents == 0
    assert outcome.payout.fee_deduction_cents == 0
    assert outcome.payout.fee_credited_at is None
    assert gateway.transfers == []
    assert await get_fee_ledger(ctx.db, vendor.id) == []

    # Still holds the slot: a second call is a duplicate
    again = await fire_payout(ctx, target)
    assert again.duplicate is True


# ---------------------------------------------------------------------------
# Exactly once
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_second_payout_for_same_item_is_a_duplicate(ctx, gateway):
    vendor, order, (item,) = await seed_order(ctx.db)
    target = await build_order_item_target(ctx.db, item, vendor)

    first = await fire_payout(ctx, target)
    second = await fire_payout(ctx, target)

    assert second.duplicate is True
    assert second.payout.id == first.payout.id
    assert len(gateway.transfers) == 1
    assert len(await _payout_rows(ctx.db, item.id)) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_concurrent_claim_loses_on_unique_index(ctx, gateway, monkeypatch):
    """A payout inserted between the dedupe read and our insert wins."""
    vendor, order, (item,) = await seed_order(ctx.db)
    existing = await persist(
        ctx.db,
        VendorPayoutFactory.create(
            vendor_profile_id=vendor.id,
            order_item_id=item.id,
            order_id=order.id,
            status=PayoutStatus.PROCESSING,
            stripe_transfer_id="tr_other_request",
            failure_reason=None,
        ),
    )
    existing_id = existing.id
    item_id = item.id
    target = await build_order_item_target(ctx.db, item, vendor)

    real_lookup = payouts.get_active_payout
    calls = []

    async def _stale_first_lookup(db, **kwargs):
        calls.append(kwargs)
        if len(calls) == 1:
            return None
        return await real_lookup(db, **kwargs)

    monkeypatch.setattr(payouts, "get_active_payout", _stale_first_lookup)

    outcome = await fire_payout(ctx, target)

    assert outcome.duplicate is True
    assert outcome.payout.id == existing_id
    assert gateway.transfers == []
    # The rollback expired item; use the plain id
    assert len(await _payout_rows(ctx.db, item_id)) == 1


@pytest.mark.asyncio
@pytest.mark.unit
async def test_failed_payout_does_not_block_a_new_attempt(ctx, gateway):
    vendor, order, (item,) = await seed_order(ctx.db)
    target = await build_order_item_target(ctx.db, item, vendor)
    gateway.fail_with = "Insufficient funds"
    failed = await fire_payout(ctx, target)

    gateway.fail_with = None
    retried = await fire_payout(ctx, target, retry_of_id=failed.payout.id)

    assert failed.failed is True
    assert retried.failed is False
    assert retried.payout.retry_of_id == failed.payout.id
    statuses = [row.status for row in await _payout_rows(ctx.db, item.id)]
    assert sorted(statuses) == [PayoutStatus.FAILED, PayoutStatus.PROCESSING]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_transfer_failure_records_failed_row_and_notifies(ctx, gateway):
    vendor, order, (item,) = await seed_order(ctx.db)
    await persist(
        ctx.db, FeeLedgerEntryFactory.create(vendor_profile_id=vendor.id, amount_cents=300)
    )
    gateway.fail_with = "Insufficient funds"

    target = await build_order_item_target(ctx.db, item, vendor)
    outcome = await fire_payout(ctx, target)

    assert outcome.failed is True
    assert outcome.error == "Insufficient funds"
    assert outcome.payout.status == PayoutStatus.FAILED
    assert outcome.payout.failure_reason == "Insufficient funds"
    # The withheld deduction is released, not credited
    assert await get_outstanding_balance(ctx.db, vendor.id) == 300
    notices = await _notifications(ctx.db, NotificationType.PAYOUT_FAILED)
    assert [n.user_id for n in notices] == [vendor.user_id]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_vendor_without_account_is_skipped_outside_production(ctx, gateway):
    vendor = VendorProfileFactory.create(
        stripe_account_id=None, stripe_payouts_enabled=False
    )
    vendor, order, (item,) = await seed_order(ctx.db, vendor=vendor)

    target = await build_order_item_target(ctx.db, item, vendor)
    outcome = await fire_payout(ctx, target)

    assert outcome.failed is False
    assert outcome.payout.status == PayoutStatus.SKIPPED_DEV
    assert outcome.payout.stripe_transfer_id == f"dev_skip_{outcome.payout.id}"
    assert gateway.transfers == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_vendor_without_account_fails_in_production(
    db_session, gateway, clock, production_settings
):
    ctx = FulfillmentContext(
        db=db_session, gateway=gateway, settings=production_settings, clock=clock
    )
    vendor = VendorProfileFactory.create(
        stripe_account_id=None, stripe_payouts_enabled=False
    )
    vendor, order, (item,) = await seed_order(db_session, vendor=vendor)

    with pytest.raises(errors.FulfillmentError) as exc_info:
        await ensure_payout_eligible(ctx, vendor)
    assert exc_info.value.code == errors.PAYOUTS_NOT_ENABLED

    target = await build_order_item_target(db_session, item, vendor)
    outcome = await fire_payout(ctx, target)
    assert outcome.failed is True
    assert outcome.payout.status == PayoutStatus.FAILED


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_stale_disabled_flag_is_refreshed_from_stripe(ctx, gateway):
    vendor = await persist(
        ctx.db, VendorProfileFactory.create(stripe_payouts_enabled=False)
    )
    gateway.accounts[vendor.stripe_account_id] = True

    assert await ensure_payout_eligible(ctx, vendor) is True

    assert gateway.account_lookups == [vendor.stripe_account_id]
    await ctx.db.refresh(vendor)
    assert vendor.stripe_payouts_enabled is True
    assert vendor.stripe_status_checked_at is not None


@pytest.mark.asyncio
@pytest.mark.unit
async def test_vendor_still_disabled_after_refresh_is_rejected(ctx, gateway):
    vendor = await persist(
        ctx.db, VendorProfileFactory.create(stripe_payouts_enabled=False)
    )

    with pytest.raises(errors.FulfillmentError) as exc_info:
        await ensure_payout_eligible(ctx, vendor)

    assert exc_info.value.status_code == 400
    assert exc_info.value.code == errors.PAYOUTS_NOT_ENABLED
    assert gateway.account_lookups == [vendor.stripe_account_id]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_enabled_vendor_skips_live_lookup(ctx, gateway):
    vendor = await persist(ctx.db, VendorProfileFactory.create())

    assert await ensure_payout_eligible(ctx, vendor) is True
    assert gateway.account_lookups == []


@pytest.mark.asyncio
@pytest.mark.unit
async def test_at_most_one_active_payout_row_per_item(ctx, gateway):
    vendor, order, (item,) = await seed_order(ctx.db)
    target = await build_order_item_target(ctx.db, item, vendor)

    gateway.fail_with = "Timeout"
    await fire_payout(ctx, target)
    gateway.fail_with = None
    await fire_payout(ctx, target)
    await fire_payout(ctx, target)

    result = await ctx.db.execute(
        select(func.count(VendorPayout.id)).where(
            VendorPayout.order_item_id == item.id,
            VendorPayout.status != PayoutStatus.FAILED,
        )
    )
    assert result.scalar_one() == 1
    assert len(gateway.transfers) == 1
