"""Vendor order endpoints: handoff, status changes, issues, external payment."""

import uuid

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from services.fulfillment_service.context import (
    FulfillmentContext,
    get_fulfillment_context,
)
from services.fulfillment_service.schemas import (
    ConfirmHandoffResponse,
    ExternalPaymentResponse,
    FulfillResponse,
    OrderItemResponse,
    ResolveIssueRequest,
    ResolveIssueResponse,
    VendorItemActionRequest,
)
from services.fulfillment_service.services import external_payments, handoff

router = APIRouter(prefix="/vendor/orders", tags=["vendor-orders"])


@router.post(
    "/{item_id}/fulfill",
    response_model=FulfillResponse,
    response_model_exclude_none=True,
)
async def fulfill_order_item(
    item_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Hand the item over. Completes the handoff if the buyer already confirmed."""
    outcome = await handoff.vendor_fulfill(ctx, current_user, item_id)

    if not outcome.completed:
        if outcome.window_expires_at is not None:
            return FulfillResponse(
                completed=False,
                message="Confirmed. Waiting for the buyer to confirm.",
            )
        return FulfillResponse(
            completed=False,
            message="Marked as fulfilled. Waiting for the buyer to confirm pickup.",
        )

    return FulfillResponse(
        completed=True,
        vendor_confirmed_at=outcome.item.vendor_confirmed_at,
        order_completed=outcome.order_completed,
    )


@router.post(
    "/{item_id}/confirm-handoff",
    response_model=ConfirmHandoffResponse,
    response_model_exclude_none=True,
)
async def confirm_handoff(
    item_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Confirm the handoff after the buyer confirmed receipt."""
    outcome = await handoff.vendor_confirm_handoff(ctx, current_user, item_id)

    if not outcome.completed:
        return ConfirmHandoffResponse(
            message="Confirmed. Waiting for the buyer to confirm.",
            vendor_confirmed_at=outcome.item.vendor_confirmed_at,
        )

    if outcome.payout_failed:
        message = (
            "Handoff confirmed. Payment transfer is delayed and will be retried."
        )
    else:
        message = "Handoff confirmed. Payment is being transferred to your account."

    return ConfirmHandoffResponse(
        message=message,
        payout_failed=True if outcome.payout_failed else None,
        vendor_confirmed_at=outcome.item.vendor_confirmed_at,
        order_completed=outcome.order_completed,
    )


@router.patch("/{item_id}", response_model=OrderItemResponse)
async def update_order_item_status(
    item_id: uuid.UUID,
    payload: VendorItemActionRequest,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Mark an item ready or missed, or reschedule a missed item."""
    item = await handoff.vendor_update_item(
        ctx, current_user, item_id, payload.action, payload.rescheduled_to
    )
    return OrderItemResponse.model_validate(item)


@router.post("/{item_id}/resolve-issue", response_model=ResolveIssueResponse)
async def resolve_issue(
    item_id: uuid.UUID,
    payload: ResolveIssueRequest,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Answer a buyer's issue report: confirm_delivery or issue_refund."""
    item = await handoff.vendor_resolve_issue(
        ctx, current_user, item_id, payload.action, payload.notes
    )
    if payload.action == "confirm_delivery":
        message = "Delivery confirmed. The report has been flagged for platform review."
    else:
        message = "Refund issued and issue resolved."
    return ResolveIssueResponse(
        message=message,
        action=payload.action,
        item=OrderItemResponse.model_validate(item),
    )


@router.post(
    "/{order_id}/confirm-external-payment", response_model=ExternalPaymentResponse
)
async def confirm_external_payment(
    order_id: uuid.UUID,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Confirm an off-platform payment (cash, Venmo, Cash App, PayPal) arrived."""
    outcome = await external_payments.vendor_confirm_external_payment(
        ctx, current_user, order_id
    )
    return ExternalPaymentResponse(
        order_id=outcome.order.id,
        status=outcome.order.status,
        fees_recorded_cents=outcome.fees_recorded_cents,
        message="Payment confirmed. Order is now active.",
    )
