"""In-app notifications for handoff and payout events.

Notifications ride on the caller's transaction: ``notify`` only adds the
row, the surrounding operation commits it. A template problem is logged
and never fails the operation that triggered it.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Optional

from libs.common.logging import get_logger
from services.fulfillment_service.models import Notification, NotificationType
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationTemplate:
    urgency: str  # immediate, standard, info
    audience: str  # buyer, vendor
    title: str
    message: Callable[[dict[str, Any]], str]


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _dollars(cents: Optional[int]) -> str:
    return f"${(cents or 0) / 100:.2f}"


def _order_ref(data: dict[str, Any]) -> str:
    ref = f"order #{data.get('order_number', '')}".strip()
    if data.get("item_title"):
        ref += f" ({data['item_title']})"
    return ref


TEMPLATES: dict[NotificationType, NotificationTemplate] = {
    NotificationType.PICKUP_CONFIRMATION_NEEDED: NotificationTemplate(
        urgency="immediate",
        audience="vendor",
        title="Pickup Confirmation Needed",
        message=lambda d: (
            f"{d.get('buyer_name') or 'A customer'} says they've picked up "
            f"{_order_ref(d)}. Please confirm within "
            f"{d.get('window_seconds', 30)} seconds."
        ),
    ),
    NotificationType.ORDER_READY: NotificationTemplate(
        urgency="standard",
        audience="buyer",
        title="Order Ready for Pickup",
        message=lambda d: (
            f"Your {_order_ref(d)} from {d.get('vendor_name', 'your vendor')} "
            "has been marked ready for pickup."
        ),
    ),
    NotificationType.ORDER_FULFILLED: NotificationTemplate(
        urgency="standard",
        audience="buyer",
        title="Confirm Your Pickup",
        message=lambda d: (
            f"{d.get('vendor_name', 'Your vendor')} handed off {_order_ref(d)}. "
            "Please confirm you received it."
        ),
    ),
    NotificationType.ORDER_COMPLETED: NotificationTemplate(
        urgency="info",
        audience="buyer",
        title="Order Complete",
        message=lambda d: (
            f"Order #{d.get('order_number', '')} is complete. "
            "Thanks for shopping local!"
        ),
    ),
    NotificationType.PICKUP_MISSED: NotificationTemplate(
        urgency="standard",
        audience="buyer",
        title="Pickup Not Confirmed",
        message=lambda d: (
            f"Your {_order_ref(d)} was not marked as picked up during the "
            "scheduled window. If you did pick it up, mark it as received now."
        ),
    ),
    NotificationType.PAYOUT_PROCESSED: NotificationTemplate(
        urgency="info",
        audience="vendor",
        title="Payout Processed",
        message=lambda d: (
            f"A payout of {_dollars(d.get('amount_cents'))} has been sent to "
            "your account."
        ),
    ),
    NotificationType.PAYOUT_FAILED: NotificationTemplate(
        urgency="standard",
        audience="vendor",
        title="Payout Delayed",
        message=lambda d: (
            f"The payout for {d.get('order_label') or 'a recent handoff'} "
            "could not be sent. "
            "We will retry automatically."
        ),
    ),
    NotificationType.MARKET_BOX_PICKUP_READY: NotificationTemplate(
        urgency="standard",
        audience="buyer",
        title="Market Box Ready",
        message=lambda d: (
            f"Week {d.get('week_number')} of {d.get('offering_name', 'your market box')} "
            "is ready for pickup."
        ),
    ),
    NotificationType.MARKET_BOX_PICKUP_CONFIRMED: NotificationTemplate(
        urgency="info",
        audience="buyer",
        title="Market Box Picked Up",
        message=lambda d: (
            f"Week {d.get('week_number')} of {d.get('offering_name', 'your market box')} "
            "has been picked up."
        ),
    ),
    NotificationType.MARKET_BOX_PICKUP_MISSED: NotificationTemplate(
        urgency="standard",
        audience="buyer",
        title="Market Box Pickup Missed",
        message=lambda d: (
            f"Week {d.get('week_number')} of {d.get('offering_name', 'your market box')} "
            "was marked as missed. Contact the vendor to reschedule."
        ),
    ),
    NotificationType.PICKUP_ISSUE_REPORTED: NotificationTemplate(
        urgency="immediate",
        audience="vendor",
        title="Issue Reported by Buyer",
        message=lambda d: (
            f"The buyer reported a problem with {_order_ref(d)}: "
            f"{d.get('description') or 'item not received'}. "
            "Confirm delivery or issue a refund."
        ),
    ),
    NotificationType.ISSUE_RESOLVED: NotificationTemplate(
        urgency="standard",
        audience="buyer",
        title="Issue Resolved",
        message=lambda d: (
            f"Your reported issue with {_order_ref(d)} was resolved. "
            f"{d.get('resolution', '')}"
        ).strip(),
    ),
}


def notify(
    db: AsyncSession,
    user_id: str,
    notification_type: NotificationType,
    **data: Any,
) -> Optional[Notification]:
    """Queue an in-app notification on the session; the caller commits."""
    template = TEMPLATES.get(notification_type)
    if template is None:
        logger.warning("No template for notification type %s", notification_type)
        return None

    try:
        message = template.message(data)
    except (KeyError, TypeError, ValueError):
        logger.exception("Failed to render %s notification", notification_type.value)
        return None

    payload = {key: _jsonable(value) for key, value in data.items()}
    payload["urgency"] = template.urgency

    notification = Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=template.title,
        message=message,
        data=payload,
    )
    db.add(notification)
    logger.info(
        "Queued %s notification for user %s", notification_type.value, user_id
    )
    return notification
