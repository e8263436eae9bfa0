"""Vendor fee balance endpoint."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from services.fulfillment_service import errors
from services.fulfillment_service.context import (
    FulfillmentContext,
    get_fulfillment_context,
)
from services.fulfillment_service.fees import get_fee_balance_summary, get_fee_ledger
from services.fulfillment_service.models import VendorProfile
from services.fulfillment_service.schemas import (
    FeeBalanceResponse,
    FeeLedgerEntryResponse,
)
from sqlalchemy import select

router = APIRouter(prefix="/vendor/fees", tags=["vendor-fees"])


@router.get("", response_model=FeeBalanceResponse)
async def get_vendor_fees(
    vendor_profile_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Outstanding platform fee balance and recent ledger entries.

    Without ``vendor_profile_id`` the caller's oldest vendor profile is used.
    """
    query = select(VendorProfile).where(VendorProfile.user_id == current_user.user_id)
    if vendor_profile_id is not None:
        query = query.where(VendorProfile.id == vendor_profile_id)
    result = await ctx.db.execute(query.order_by(VendorProfile.created_at).limit(1))
    vendor = result.scalar_one_or_none()
    if vendor is None:
        if vendor_profile_id is not None:
            raise errors.forbidden("You do not own this vendor profile")
        raise errors.FulfillmentError(
            status.HTTP_403_FORBIDDEN, errors.NOT_A_VENDOR, "Not a vendor"
        )

    summary = await get_fee_balance_summary(
        ctx.db, vendor.id, ctx.now(), ctx.settings
    )
    entries = await get_fee_ledger(ctx.db, vendor.id, limit=limit)
    return FeeBalanceResponse(
        vendor_profile_id=vendor.id,
        balance_cents=summary.balance_cents,
        oldest_unpaid_at=summary.oldest_unpaid_at,
        requires_payment=summary.requires_payment,
        entries=[FeeLedgerEntryResponse.model_validate(e) for e in entries],
    )
