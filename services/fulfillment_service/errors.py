"""Error catalog for the fulfillment service.

Every failure the handoff protocol can surface carries a stable code so
clients can branch on it without parsing messages.
"""

from typing import Any, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

# Order / handoff
ORDER_NOT_FOUND = "ERR_ORDER_001"
ORDER_NOT_CONFIRMABLE = "ERR_ORDER_003"
VENDOR_HANDOFF_FAILED = "ERR_ORDER_004"
CONFIRMATION_WINDOW_EXPIRED = "ERR_ORDER_006"
ALREADY_CONFIRMED = "ERR_ORDER_007"
CONFIRMATION_RACE_LOST = "ERR_ORDER_008"
ISSUE_ALREADY_REPORTED = "ERR_ORDER_009"
HANDOFF_LOCKDOWN_ACTIVE = "ERR_ORDER_010"
ISSUE_NOT_OPEN = "ERR_ORDER_011"

# Market box pickups
PICKUP_NOT_FOUND = "ERR_MBOX_001"
PICKUP_INVALID_TRANSITION = "ERR_MBOX_002"
PICKUP_RESCHEDULE_DATE_REQUIRED = "ERR_MBOX_003"
PICKUP_INVALID_ACTION = "ERR_MBOX_004"
SUBSCRIPTION_NOT_ACTIVE = "ERR_MBOX_005"

# Payouts
PAYOUTS_NOT_ENABLED = "ERR_PAYOUT_001"

# Access
NOT_A_VENDOR = "ERR_AUTH_001"
FORBIDDEN = "ERR_AUTH_002"


class FulfillmentError(HTTPException):
    """HTTPException with a catalog code and optional extra response fields."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        extra: Optional[dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.message = message
        self.extra = extra or {}

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


def order_not_found(message: str = "Order item not found") -> FulfillmentError:
    return FulfillmentError(status.HTTP_404_NOT_FOUND, ORDER_NOT_FOUND, message)


def pickup_not_found(message: str = "Pickup not found") -> FulfillmentError:
    return FulfillmentError(status.HTTP_404_NOT_FOUND, PICKUP_NOT_FOUND, message)


def forbidden(message: str) -> FulfillmentError:
    return FulfillmentError(status.HTTP_403_FORBIDDEN, FORBIDDEN, message)


def not_confirmable(message: str, **extra: Any) -> FulfillmentError:
    return FulfillmentError(
        status.HTTP_400_BAD_REQUEST, ORDER_NOT_CONFIRMABLE, message, extra
    )


def already_confirmed(message: str = "Already confirmed") -> FulfillmentError:
    return FulfillmentError(status.HTTP_409_CONFLICT, ALREADY_CONFIRMED, message)


def window_expired(message: str) -> FulfillmentError:
    return FulfillmentError(
        status.HTTP_409_CONFLICT, CONFIRMATION_WINDOW_EXPIRED, message
    )


def race_lost() -> FulfillmentError:
    return FulfillmentError(
        status.HTTP_409_CONFLICT,
        CONFIRMATION_RACE_LOST,
        "The record changed while confirming. Please retry.",
    )


def invalid_transition(message: str) -> FulfillmentError:
    return FulfillmentError(
        status.HTTP_400_BAD_REQUEST, PICKUP_INVALID_TRANSITION, message
    )


async def fulfillment_error_handler(
    request: Request, exc: FulfillmentError
) -> JSONResponse:
    """Render a FulfillmentError as {"error", "code", ...}."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())
