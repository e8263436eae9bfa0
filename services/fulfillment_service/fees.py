"""Vendor fee ledger: platform fees owed by vendors and their settlement.

Debits come from orders paid outside the platform. Credits are written when
part of a payout is withheld against the balance. Reads that feed an
auto-deduction hold a row lock on the vendor so two payouts for the same
vendor cannot both see the full balance.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import as_utc
from libs.common.logging import get_logger
from services.fulfillment_service.models import (
    FeeEntryType,
    PayoutStatus,
    VendorFeeLedgerEntry,
    VendorPayout,
    VendorProfile,
)
from services.fulfillment_service.pricing import (
    FeeSchedule,
    calculate_external_payment_fee,
)
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Payout states whose withheld deduction is spoken for until credited
_RESERVING_STATUSES = (PayoutStatus.PROCESSING, PayoutStatus.FEE_OFFSET)


@dataclass
class FeeBalanceSummary:
    balance_cents: int
    oldest_unpaid_at: Optional[datetime]
    requires_payment: bool


# ---------------------------------------------------------------------------
# Balance
# ---------------------------------------------------------------------------


async def lock_vendor_for_fees(
    db: AsyncSession, vendor_profile_id: uuid.UUID
) -> Optional[VendorProfile]:
    """SELECT ... FOR UPDATE on the vendor row, held until commit/rollback."""
    result = await db.execute(
        select(VendorProfile)
        .where(VendorProfile.id == vendor_profile_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()


async def _ledger_totals(
    db: AsyncSession, vendor_profile_id: uuid.UUID
) -> tuple[int, int]:
    result = await db.execute(
        select(VendorFeeLedgerEntry.entry_type, func.sum(VendorFeeLedgerEntry.amount_cents))
        .where(VendorFeeLedgerEntry.vendor_profile_id == vendor_profile_id)
        .group_by(VendorFeeLedgerEntry.entry_type)
    )
    totals = {entry_type: int(total or 0) for entry_type, total in result.all()}
    return totals.get(FeeEntryType.DEBIT, 0), totals.get(FeeEntryType.CREDIT, 0)


async def _reserved_deductions(db: AsyncSession, vendor_profile_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(VendorPayout.fee_deduction_cents), 0)).where(
            VendorPayout.vendor_profile_id == vendor_profile_id,
            VendorPayout.status.in_(_RESERVING_STATUSES),
            VendorPayout.fee_deduction_cents > 0,
            VendorPayout.fee_credited_at.is_(None),
        )
    )
    return int(result.scalar_one())


async def get_outstanding_balance(
    db: AsyncSession, vendor_profile_id: uuid.UUID
) -> int:
    """Fees the vendor still owes, net of deductions already being withheld.

    Never negative.
    """
    debits, credits = await _ledger_totals(db, vendor_profile_id)
    reserved = await _reserved_deductions(db, vendor_profile_id)
    return max(0, debits - credits - reserved)


def calculate_auto_deduct_amount(
    payout_cents: int, balance_cents: int, max_percent: int = 100
) -> int:
    """Amount to withhold from a payout against an owed balance.

    ``min(payout, balance)``, optionally capped at ``max_percent`` of the
    payout. Zero when nothing is owed.
    """
    if balance_cents <= 0 or payout_cents <= 0:
        return 0
    cap = payout_cents * max_percent // 100
    return max(0, min(balance_cents, payout_cents, cap))


# ---------------------------------------------------------------------------
# Ledger writes
# ---------------------------------------------------------------------------


async def record_fee_credit(
    db: AsyncSession,
    vendor_profile_id: uuid.UUID,
    amount_cents: int,
    reason: str,
    related_order_id: Optional[uuid.UUID] = None,
    payout_id: Optional[uuid.UUID] = None,
) -> Optional[VendorFeeLedgerEntry]:
    """Record a fee settlement. Call only once the withheld payout is final.

    Flushes but does not commit.
    """
    if amount_cents <= 0:
        return None

    entry = VendorFeeLedgerEntry(
        vendor_profile_id=vendor_profile_id,
        order_id=related_order_id,
        payout_id=payout_id,
        amount_cents=amount_cents,
        entry_type=FeeEntryType.CREDIT,
        description=reason,
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "Fee credit %dc for vendor %s (payout=%s)",
        amount_cents,
        vendor_profile_id,
        payout_id,
    )
    return entry


async def record_external_payment_fee(
    db: AsyncSession,
    vendor_profile_id: uuid.UUID,
    order_id: uuid.UUID,
    subtotal_cents: int,
    fees: Optional[FeeSchedule] = None,
) -> Optional[VendorFeeLedgerEntry]:
    """Debit the platform fee for an order the buyer paid off-platform."""
    amount = calculate_external_payment_fee(subtotal_cents, fees)
    if amount <= 0:
        return None

    entry = VendorFeeLedgerEntry(
        vendor_profile_id=vendor_profile_id,
        order_id=order_id,
        amount_cents=amount,
        entry_type=FeeEntryType.DEBIT,
        description="Platform fee for external payment order",
    )
    db.add(entry)
    await db.flush()

    logger.info(
        "Fee debit %dc for vendor %s (order=%s)", amount, vendor_profile_id, order_id
    )
    return entry


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


async def get_fee_ledger(
    db: AsyncSession, vendor_profile_id: uuid.UUID, limit: int = 50
) -> list[VendorFeeLedgerEntry]:
    result = await db.execute(
        select(VendorFeeLedgerEntry)
        .where(VendorFeeLedgerEntry.vendor_profile_id == vendor_profile_id)
        .order_by(VendorFeeLedgerEntry.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _oldest_unpaid_debit_at(
    db: AsyncSession, vendor_profile_id: uuid.UUID, credits_cents: int
) -> Optional[datetime]:
    """Credits settle debits oldest first; return the first debit not covered."""
    result = await db.execute(
        select(VendorFeeLedgerEntry.amount_cents, VendorFeeLedgerEntry.created_at)
        .where(
            VendorFeeLedgerEntry.vendor_profile_id == vendor_profile_id,
            VendorFeeLedgerEntry.entry_type == FeeEntryType.DEBIT,
        )
        .order_by(VendorFeeLedgerEntry.created_at.asc())
    )
    remaining_credit = credits_cents
    for amount_cents, created_at in result.all():
        if remaining_credit >= amount_cents:
            remaining_credit -= amount_cents
            continue
        return as_utc(created_at)
    return None


async def get_fee_balance_summary(
    db: AsyncSession,
    vendor_profile_id: uuid.UUID,
    now: datetime,
    settings: Optional[Settings] = None,
) -> FeeBalanceSummary:
    """Balance plus whether the vendor must settle it before more external orders."""
    settings = settings or get_settings()
    debits, credits = await _ledger_totals(db, vendor_profile_id)
    balance = max(0, debits - credits)

    oldest_unpaid_at = None
    if balance > 0:
        oldest_unpaid_at = await _oldest_unpaid_debit_at(
            db, vendor_profile_id, credits
        )

    too_old = oldest_unpaid_at is not None and (
        now - oldest_unpaid_at
        >= timedelta(days=settings.FEE_BALANCE_INVOICE_AGE_DAYS)
    )
    return FeeBalanceSummary(
        balance_cents=balance,
        oldest_unpaid_at=oldest_unpaid_at,
        requires_payment=(
            balance >= settings.FEE_BALANCE_INVOICE_THRESHOLD_CENTS or too_old
        ),
    )
