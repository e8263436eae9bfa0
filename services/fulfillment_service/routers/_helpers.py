"""Shared response builders for fulfillment routers."""

from services.fulfillment_service.schemas import PickupActionResponse, PickupResponse
from services.fulfillment_service.services.pickups import PickupOutcome


def pickup_action_response(outcome: PickupOutcome) -> PickupActionResponse:
    """Render a pickup outcome in the shape both pickup endpoints return."""
    pickup = outcome.pickup
    return PickupActionResponse(
        pickup=PickupResponse.model_validate(pickup),
        completed=outcome.completed,
        waiting_for_buyer=outcome.waiting_for_buyer,
        waiting_for_vendor=outcome.waiting_for_vendor,
        confirmation_window_expires_at=(
            outcome.window_expires_at or pickup.confirmation_window_expires_at
        ),
        message=outcome.message,
        payout_failed=True if outcome.payout and outcome.payout.failed else None,
        subscription_completed=outcome.subscription_completed or None,
    )
