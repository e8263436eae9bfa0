"""Tip distribution across the vendors' items of an order."""


def vendor_tip_pool(tip_amount_cents: int, tip_on_platform_fee_cents: int) -> int:
    """Portion of the buyer's tip that goes to vendors."""
    return max(0, (tip_amount_cents or 0) - (tip_on_platform_fee_cents or 0))


def allocate_tip_share(
    tip_amount_cents: int, tip_on_platform_fee_cents: int, item_count: int
) -> int:
    """Equal per-item share of the vendor tip pool.

    The remainder of the integer division stays with the platform, so a
    100 cent tip across 3 items pays 33 cents per item.
    """
    if item_count <= 0:
        return 0
    return vendor_tip_pool(tip_amount_cents, tip_on_platform_fee_cents) // item_count
