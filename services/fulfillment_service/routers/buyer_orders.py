"""Buyer order item endpoints: confirm receipt, report an issue."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from services.fulfillment_service.context import (
    FulfillmentContext,
    get_fulfillment_context,
)
from services.fulfillment_service.schemas import (
    BuyerConfirmResponse,
    ReportIssueRequest,
    ReportIssueResponse,
)
from services.fulfillment_service.services import handoff

router = APIRouter(prefix="/buyer/orders", tags=["buyer-orders"])


@router.post(
    "/{item_id}/confirm",
    response_model=BuyerConfirmResponse,
    response_model_exclude_none=True,
)
async def confirm_receipt(
    item_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Buyer confirms they received the item."""
    outcome = await handoff.buyer_confirm(ctx, current_user, item_id)
    item = outcome.item

    if not outcome.completed:
        return BuyerConfirmResponse(
            completed=False,
            waiting_for_vendor=True,
            message=(
                "Receipt confirmed. The vendor has "
                f"{ctx.settings.CONFIRMATION_WINDOW_SECONDS} seconds to confirm."
            ),
            buyer_confirmed_at=item.buyer_confirmed_at,
            confirmation_window_expires_at=outcome.window_expires_at,
        )

    return BuyerConfirmResponse(
        completed=True,
        waiting_for_vendor=False,
        message="Pickup confirmed by both parties.",
        buyer_confirmed_at=item.buyer_confirmed_at,
        payout_failed=True if outcome.payout_failed else None,
        order_completed=outcome.order_completed,
    )


@router.post("/{item_id}/report-issue", response_model=ReportIssueResponse)
async def report_issue(
    item_id: uuid.UUID,
    payload: Optional[ReportIssueRequest] = None,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Report that the item was not received."""
    item = await handoff.buyer_report_issue(
        ctx, current_user, item_id, payload.description if payload else None
    )
    return ReportIssueResponse(
        message="Issue reported. Platform support will review and contact you.",
        issue_reported_at=item.issue_reported_at,
    )
