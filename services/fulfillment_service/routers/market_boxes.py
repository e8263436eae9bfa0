"""Market box pickup endpoints for vendors and buyers."""

import uuid

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from services.fulfillment_service.context import (
    FulfillmentContext,
    get_fulfillment_context,
)
from services.fulfillment_service.routers._helpers import pickup_action_response
from services.fulfillment_service.schemas import (
    BuyerPickupConfirmRequest,
    PickupActionResponse,
    PickupUpdateRequest,
)
from services.fulfillment_service.services import pickups

router = APIRouter(tags=["market-boxes"])


@router.patch(
    "/vendor/market-boxes/pickups/{pickup_id}",
    response_model=PickupActionResponse,
    response_model_exclude_none=True,
)
async def update_pickup(
    pickup_id: uuid.UUID,
    payload: PickupUpdateRequest,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Vendor marks a pickup ready, picked up, missed or rescheduled."""
    outcome = await pickups.vendor_update_pickup(
        ctx,
        current_user,
        pickup_id,
        action=payload.action,
        vendor_notes=payload.vendor_notes,
        rescheduled_to=payload.rescheduled_to,
    )
    return pickup_action_response(outcome)


@router.post(
    "/buyer/market-boxes/{subscription_id}/confirm-pickup",
    response_model=PickupActionResponse,
    response_model_exclude_none=True,
)
async def confirm_pickup(
    subscription_id: uuid.UUID,
    payload: BuyerPickupConfirmRequest,
    current_user: AuthUser = Depends(get_current_user),
    ctx: FulfillmentContext = Depends(get_fulfillment_context),
):
    """Buyer confirms they collected a week's box."""
    outcome = await pickups.buyer_confirm_pickup(
        ctx, current_user, subscription_id, payload.pickup_id
    )
    return pickup_action_response(outcome)
