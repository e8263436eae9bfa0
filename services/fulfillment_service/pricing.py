"""Platform fee arithmetic.

All amounts are integer cents. Percent fees round half up to the cent.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from libs.common.config import Settings, get_settings


@dataclass(frozen=True)
class FeeSchedule:
    buyer_fee_percent: float
    buyer_flat_fee_cents: int
    vendor_fee_percent: float
    vendor_flat_fee_cents: int
    external_seller_fee_percent: float = 3.5

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FeeSchedule":
        settings = settings or get_settings()
        return cls(
            buyer_fee_percent=settings.BUYER_FEE_PERCENT,
            buyer_flat_fee_cents=settings.BUYER_FLAT_FEE_CENTS,
            vendor_fee_percent=settings.VENDOR_FEE_PERCENT,
            vendor_flat_fee_cents=settings.VENDOR_FLAT_FEE_CENTS,
            external_seller_fee_percent=settings.EXTERNAL_SELLER_FEE_PERCENT,
        )


def percent_of(amount_cents: int, percent: float) -> int:
    """Return ``percent`` of ``amount_cents`` rounded half up."""
    value = Decimal(amount_cents) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def pickup_base_cents(total_paid_cents: int, term_weeks: int) -> int:
    """Per-week share of a market box subscription price."""
    if term_weeks <= 0:
        return 0
    return total_paid_cents // term_weeks


def calculate_pickup_payout_cents(
    total_paid_cents: int, term_weeks: int, fees: Optional[FeeSchedule] = None
) -> int:
    """Vendor payout for one market box pickup.

    Only the percent fee applies; the flat fee was taken once when the
    subscription was bought.
    """
    fees = fees or FeeSchedule.from_settings()
    base = pickup_base_cents(total_paid_cents, term_weeks)
    return base - percent_of(base, fees.vendor_fee_percent)


def calculate_external_payment_fee(
    subtotal_cents: int, fees: Optional[FeeSchedule] = None
) -> int:
    """Platform fee a vendor owes on an order the buyer paid off-platform.

    The buyer-side fee plus a reduced seller-side percent, no seller flat fee.
    """
    fees = fees or FeeSchedule.from_settings()
    buyer_fee = percent_of(subtotal_cents, fees.buyer_fee_percent) + (
        fees.buyer_flat_fee_cents
    )
    return buyer_fee + percent_of(subtotal_cents, fees.external_seller_fee_percent)
